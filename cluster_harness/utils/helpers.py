import datetime
import random
import string


def get_rand_str(length: int = 8) -> str:
    """Return random string."""
    if length < 1:
        return ""
    return "".join(random.choice(string.ascii_lowercase) for __ in range(length))


def format_timestamp(timestamp: float) -> str:
    """Return human readable local time for a POSIX timestamp."""
    return datetime.datetime.fromtimestamp(timestamp).astimezone().isoformat(
        sep=" ", timespec="milliseconds"
    )


def format_duration(secs: float) -> str:
    """Return duration in the `1m2.5s` / `850ms` format used in log messages.

    >>> format_duration(62.5)
    '1m2.5s'
    >>> format_duration(0.85)
    '850ms'
    """
    if secs < 1:
        return f"{round(secs * 1000)}ms"
    mins, rem = divmod(secs, 60)
    rem_str = f"{rem:.3f}".rstrip("0").rstrip(".")
    return f"{int(mins)}m{rem_str}s" if mins else f"{rem_str}s"

