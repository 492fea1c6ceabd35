import re
from datetime import datetime, timezone
from typing import Any

DEFAULT_BLOCKSIZE = 16 * 1024

_BLOCKSIZE_RE = re.compile(r"^(\d+)([KMG])?$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def utc_now_iso() -> str:
    """Return current UTC time as ISO format string with timezone info."""
    return datetime.now(timezone.utc).isoformat()


def format_bytes(size: Any) -> str:
    """Human readable size, e.g. ``1.50 GB``."""
    if not size:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    return f"{value:.2f} {units[idx]}"


def parse_blocksize(value: Any) -> int:
    """Parse a ZFS blocksize string ("16K", "128k", "1M") to bytes. Returns 0 if invalid."""
    if value is None or value == "":
        return 0
    match = _BLOCKSIZE_RE.match(str(value).strip())
    if not match:
        return 0
    return int(match.group(1)) * _UNITS[match.group(2).upper() if match.group(2) else ""]


def align_size(size: int, blocksize: int) -> int:
    """Round ``size`` up to a multiple of ``blocksize``."""
    if blocksize <= 0:
        return size
    remainder = size % blocksize
    if remainder:
        size += blocksize - remainder
    return size


def normalize_value(value: Any) -> Any:
    """
    Unwrap middleware property dicts ({"parsed": ..., "rawvalue": ..., "value": ...})
    into their parsed value. Plain values pass through; None becomes 0.
    """
    if value is None:
        return 0
    if isinstance(value, dict):
        for key in ("parsed", "rawvalue", "raw", "value"):
            if value.get(key) is not None:
                return value[key]
        return 0
    return value


def to_int(value: Any) -> int:
    """normalize_value coerced to int; unparseable values become 0."""
    value = normalize_value(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
