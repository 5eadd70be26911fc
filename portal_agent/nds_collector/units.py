"""Byte counter normalisation for values reported by ndsctl."""

from __future__ import annotations

import re
from typing import Union

KIB = 1024

UNIT_MULTIPLIERS = {
    "KB": KIB,
    "MB": KIB ** 2,
    "GB": KIB ** 3,
}

# Leading number, then whatever follows it.
_VALUE_RE = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*(\S*)")


def normalize_bytes(raw: Union[str, int, float, None]) -> int:
    """
    Convert a size such as ``"5MB"``, ``"1.5KB"`` or ``"2048"`` into bytes.

    Suffixes are powers of 1024 and matched case-insensitively. A value
    with no suffix, or with a suffix that is not KB/MB/GB, is taken as a
    raw byte count. Fractions are truncated toward zero after scaling.
    Values without a leading number normalise to 0.
    """
    if raw is None or isinstance(raw, bool):
        return 0
    if isinstance(raw, (int, float)):
        try:
            return int(raw)
        except (OverflowError, ValueError):
            return 0

    match = _VALUE_RE.match(str(raw))
    if not match:
        return 0

    number, suffix = match.groups()
    multiplier = UNIT_MULTIPLIERS.get(suffix.upper(), 1)
    try:
        return int(float(number) * multiplier)
    except (OverflowError, ValueError):
        return 0
