from cachemeter.models import CacheStats, EgressSummary, KeyStatus

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(num_bytes: "int | float") -> "str":
    """
    renders a byte count with 1024-based units and at most two
    decimals, e.g. 1536 -> '1.5 KB'.
    """
    if num_bytes <= 0:
        return "0 B"
    exponent = 0
    while exponent < len(_BYTE_UNITS) - 1 and num_bytes >= 1024 ** (exponent + 1):
        exponent += 1
    scaled = round(num_bytes / 1024**exponent, 2)
    return f"{scaled:g} {_BYTE_UNITS[exponent]}"


def format_duration_ms(ms: "int") -> "str":
    sign = "-" if ms < 0 else ""
    seconds = abs(ms) // 1000
    if seconds < 60:
        return f"{sign}{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{sign}{minutes}m{seconds:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{sign}{hours}h{minutes:02d}m"


def _share(part: "int", total: "int") -> "float":
    return part / total * 100 if total else 0.0


def render_egress_report(summary: "EgressSummary") -> "str":
    total = summary.total_egress
    lines = [
        f"Egress Report (last {summary.period_hours:g}h)",
        f"Total Egress: {format_bytes(total)}",
        f"Cached: {format_bytes(summary.cached_egress)} "
        f"({_share(summary.cached_egress, total):.1f}%)",
        f"Uncached: {format_bytes(summary.uncached_egress)} "
        f"({_share(summary.uncached_egress, total):.1f}%)",
        "",
        "Top Endpoints:",
    ]
    if not summary.top_endpoints:
        lines.append("(no traffic recorded)")
    for index, item in enumerate(summary.top_endpoints, start=1):
        lines.append(
            f"{index}. {item.endpoint}: {format_bytes(item.egress)} "
            f"({item.percentage:.1f}%)"
        )

    if summary.recommendations:
        lines.append("")
        lines.append("Recommendations:")
        for index, text in enumerate(summary.recommendations, start=1):
            lines.append(f"{index}. {text}")

    return "\n".join(lines) + "\n"


def render_cache_status(
    statuses: "dict[str, KeyStatus]",
    stats: "CacheStats",
) -> "str":
    lines = [
        f"Keys: {stats.total_keys} "
        f"(valid {stats.valid_items}, expired {stats.expired_items})",
        f"Size: {format_bytes(stats.total_size_bytes)}",
    ]
    for key in sorted(statuses):
        status = statuses[key]
        state = "expired" if status.expired else "valid"
        lines.append(
            f"  {key}: {state}, age {format_duration_ms(status.age)}, "
            f"expires in {format_duration_ms(status.expires_in)}, "
            f"{format_bytes(status.data_size)}"
        )
    return "\n".join(lines) + "\n"
