import argparse

from cachemeter.config import Config


def parse_args(argv: "list[str] | None" = None) -> "tuple[Config, argparse.Namespace]":
    parser = argparse.ArgumentParser(
        prog="cachemeter",
        description="Inspect and reset the persisted client cache and egress log",
    )
    parser.add_argument(
        "--storage.path",
        dest="storage_path",
        default=None,
        help="SQLite database to inspect (default: $CACHEMETER_STORAGE_PATH)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: warning)",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Render log lines as JSON",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    report = subparsers.add_parser("report", help="Print the egress report")
    report.add_argument(
        "--period.hours",
        dest="period_hours",
        type=float,
        default=24.0,
        help="Report window in hours (default: 24)",
    )
    subparsers.add_parser("status", help="Print cache key status and snapshot stats")
    subparsers.add_parser("clear-metrics", help="Delete the persisted egress log")
    subparsers.add_parser("clear-cache", help="Delete cached entries and snapshots")

    args = parser.parse_args(argv)
    config = Config.from_env()
    if args.storage_path is not None:
        config.storage_path = args.storage_path
    config.log_level = args.log_level
    return config, args
