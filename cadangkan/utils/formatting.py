"""Human-readable formatting helpers for sizes and durations."""


def format_bytes(size: int) -> str:
    """
    Convert a byte count to a human-readable string.

    Uses binary units with one decimal place, e.g. 1536 -> "1.5 KB".

    Args:
        size: Number of bytes

    Returns:
        Formatted size string
    """
    unit = 1024
    if size < unit:
        return f"{size} B"

    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit

    units = ['KB', 'MB', 'GB', 'TB', 'PB', 'EB']
    return f"{size / div:.1f} {units[exp]}"


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds as "42s", "3m 12s" or "2h 5m".

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    total = int(seconds)
    if total < 3600:
        minutes, secs = divmod(total, 60)
        return f"{minutes}m {secs}s"

    hours, remainder = divmod(total, 3600)
    return f"{hours}h {remainder // 60}m"
