"""Small numeric and formatting helpers shared across hostpulse."""

import time
from collections.abc import Sequence

GIB = 1024**3


def clamp_percent(value: float) -> float:
    """Clamp a percentage to [0, 100]."""
    if value < 0:
        return 0.0
    if value > 100:
        return 100.0
    return float(value)


def clamp_int(value: int, low: int, high: int) -> int:
    """Clamp an integer to [low, high]."""
    if value < low:
        return low
    if value > high:
        return high
    return value


def clamp_float(value: float, low: float, high: float) -> float:
    """Clamp a float to [low, high]."""
    if value < low:
        return low
    if value > high:
        return high
    return value


def to_gb(size: int | float) -> float:
    """Convert bytes to GiB."""
    return size / GIB


def safe_text(value: str | None, fallback: str) -> str:
    """Return the stripped value, or fallback when it is empty or None."""
    if value is None:
        return fallback
    text = value.strip()
    return text if text else fallback


def median(values: Sequence[float]) -> float:
    """
    Median of a short window using insertion sort.

    For an even count the upper middle element is returned.
    """
    buf = list(values)
    n = len(buf)
    if n == 0:
        return 0.0

    for i in range(1, n):
        x = buf[i]
        j = i - 1
        while j >= 0 and buf[j] > x:
            buf[j + 1] = buf[j]
            j -= 1
        buf[j + 1] = x

    return buf[n // 2]


def format_bytes(size: int | float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{int(size):5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_percent(value: float | int, unavailable: bool = False) -> str:
    """Format a percentage for display, using 'N/A' for unavailable values."""
    if unavailable or value < 0:
        return "  N/A"
    return f"{value:5.1f}%"


def monotonic_ms() -> int:
    """Milliseconds from a monotonic clock."""
    return int(time.monotonic() * 1000)


def ema_step_int(prev: int, target: int, alpha: float) -> int:
    """
    One integer EMA step toward target.

    Rounding alone can park the value one unit short of the target forever,
    so a step that rounds to no change moves by one unit instead.
    """
    value = round(prev + alpha * (target - prev))
    if value == prev and target != prev:
        value += 1 if target > prev else -1
    return value
