"""
now_ms() provides the canonical wall-clock timestamp stamped onto events,
queued updates and snapshots. monotonic() is used for ages, timeouts and
staleness so that wall-clock jumps never trigger a flush or a reconnect.
parse_duration() turns config strings like '500ms' or '30s' into seconds.
"""

import time
from typing import Final

# type alias (at runtime equivalent to int)
Millis = int  # Milliseconds since epoch

_TIME_UNITS_MS: Final[dict[str, int]] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
}


def now_ms() -> Millis:
    """Current wall-clock time in unix milliseconds."""
    return int(time.time() * 1000)


def monotonic() -> float:
    return time.monotonic()


def parse_duration_ms(value: str) -> Millis:
    """
    Parse duration strings like '250ms', '5s', '2m', '1h' into milliseconds.
    Raises ValueError on unknown units, empty quantities, non-digits, or non-positive values.

    Valid units: ms, s, m, h. Decimals are not supported; use a smaller unit.
    """
    # "ms" has to be tried before "m" and "s"
    units = ("ms", "s", "m", "h")

    text = value.strip().lower()

    for u in units:
        if text.endswith(u):
            prefix = text[: -len(u)].strip()
            if not prefix or not prefix.isdigit():
                raise ValueError(
                    f"clock.parse_duration(): quantity missing or not digit: {value!r}"
                )
            quantity = int(prefix)
            if quantity <= 0:
                raise ValueError(f"clock.parse_duration(): quantity must be positive: {value!r}")
            return quantity * _TIME_UNITS_MS[u]
    raise ValueError(f"clock.parse_duration(): invalid duration: {value!r}")


def parse_duration(value: str | int | float) -> float:
    """Seconds from a duration string, or a plain number already in seconds."""
    if isinstance(value, bool):
        raise ValueError(f"clock.parse_duration(): invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"clock.parse_duration(): negative duration: {value!r}")
        return float(value)
    text = value.strip()
    try:
        number = float(text)
    except ValueError:
        return parse_duration_ms(text) / 1000.0
    return parse_duration(number)
