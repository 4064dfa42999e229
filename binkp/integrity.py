"""
Integrity helpers — BLAKE3 digests of received files.

hash_file(path) → str   (hex digest, recorded in the session log)
"""

from __future__ import annotations

from pathlib import Path

import blake3 as _b3

_READ_SIZE = 64 * 1024


def hash_file(path: str | Path) -> str:
    """Return the hex BLAKE3 digest of the file at *path*."""
    hasher = _b3.blake3()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_READ_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()
