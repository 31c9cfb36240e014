"""
TaskAPI Shared Utilities — ids, timestamps and URL helpers used by the handlers.
"""

from __future__ import annotations

import secrets
import time

from starlette.datastructures import URL

# URL-safe alphabet, 21 chars → ~126 bits of randomness
ID_ALPHABET = "useandom-26T198340PX75pxJACKVERYMINDBUSHWOLF_GQZbfghjklqvwyzrict"
ID_SIZE = 21


def new_id(size: int = ID_SIZE) -> str:
    """
    Generate an opaque, URL-safe random identifier.

    Examples:
        new_id()     → "V1StGXR8_Z5jdHi6B-myT"
        new_id(8)    → "Uakgb_J5"
    """
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(size))


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def next_timestamp(previous: int) -> int:
    """A timestamp strictly greater than ``previous``, normally just now_ms()."""
    return max(now_ms(), previous + 1)


def base_url(url: URL) -> str:
    """The URL without query string or trailing slash."""
    return str(url.replace(query="", fragment="")).rstrip("/")


def strip_suffix(url: str, suffix: str) -> str:
    """Drop ``suffix`` from the end of ``url`` if present."""
    return url[: -len(suffix)] if suffix and url.endswith(suffix) else url
