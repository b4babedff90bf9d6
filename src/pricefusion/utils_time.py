"""
Time Utilities Module
=====================

Utility functions for working with timestamps.
All timestamps are in milliseconds.
"""

import time


def now_ms() -> int:
    """
    Get current timestamp in milliseconds.

    Returns:
        Current Unix timestamp in milliseconds.

    Example:
        >>> ts = now_ms()
        >>> print(ts)  # 1706356800000
    """
    return int(time.time() * 1000)


def age_ms(ts_ms: int, reference_ms: int) -> int:
    """
    Age of a timestamp relative to a reference instant.

    Negative when the timestamp lies in the future (clock skew between
    sources is common, callers decide how to treat it).
    """
    return reference_ms - ts_ms
