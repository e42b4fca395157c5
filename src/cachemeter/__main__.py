import argparse
import asyncio
import sys

import structlog
from prometheus_client import CollectorRegistry

from cachemeter.cli import parse_args
from cachemeter.config import Config
from cachemeter.formatting import format_bytes, render_cache_status
from cachemeter.logging import setup_logging
from cachemeter.result import Err
from cachemeter.services import Services

logger = structlog.get_logger()


async def _run(config: "Config", args: "argparse.Namespace") -> "int":
    # the CLI exports nothing, so it keeps its counters off the global registry
    async with Services(config, registry=CollectorRegistry()) as services:
        if args.command == "report":
            print(services.egress.get_formatted_report(args.period_hours), end="")
            return 0

        if args.command == "status":
            print(
                render_cache_status(
                    services.cache.get_all_status(),
                    services.cache.get_cache_stats(),
                ),
                end="",
            )
            stats = await services.snapshots.get_stats()
            print(f"Snapshots: {stats.item_count} ({format_bytes(stats.total_size)})")
            return 0

        if args.command == "clear-metrics":
            if not await services.egress.clear_metrics():
                print("Failed to clear egress metrics.", file=sys.stderr)
                return 1
            print("Egress metrics cleared.")
            return 0

        # clear-cache
        keys = await services.store.get_all_keys()
        if isinstance(keys, Err):
            print(f"Failed to clear cache: storage {keys.kind.value}.", file=sys.stderr)
            return 1
        entries = services.cache.get_cache_stats().total_keys
        services.cache.clear()
        snapshots = await services.snapshots.clear()
        await services.cache.flush()
        print(f"Cache cleared ({entries} entries, {snapshots} snapshots).")
        return 0


def main(argv: "list[str] | None" = None) -> "int":
    config, args = parse_args(argv)
    setup_logging(config.log_level, json_output=args.log_json)

    if not config.persistent:
        raise SystemExit(
            "No storage configured. Set CACHEMETER_STORAGE_PATH or pass --storage.path."
        )

    logger.debug("command_start", command=args.command, storage=config.storage_path)
    return asyncio.run(_run(config, args))


if __name__ == "__main__":
    sys.exit(main())
