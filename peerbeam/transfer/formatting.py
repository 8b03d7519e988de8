"""Human-readable sizes, speeds and durations for logs and the API."""

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_size(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(_UNITS) - 1:
        value /= 1024
        exponent += 1
    # 1.50 -> 1.5, 2.00 -> 2
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_UNITS[exponent]}"


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second <= 0:
        return "0 B/s"
    return f"{format_size(bytes_per_second)}/s"


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{int(minutes)}m {round(secs)}s"
    hours, rest = divmod(seconds, 3600)
    return f"{int(hours)}h {int(rest // 60)}m"
