import math
import time
from typing import Callable

# returns the current time as integer unix milliseconds
Clock = Callable[[], int]


def now_ms() -> "int":
    return int(time.time() * 1000)


def ttl_to_ms(ttl_seconds: "float", max_seconds: "float") -> "int":
    """
    converts a ttl to milliseconds. NaN and non-positive values map to
    0 (expire immediately); infinite or larger values are capped at
    max_seconds.
    """
    if math.isnan(ttl_seconds) or ttl_seconds <= 0:
        return 0
    return int(min(ttl_seconds, max_seconds) * 1000)
