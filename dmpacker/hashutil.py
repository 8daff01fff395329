from __future__ import annotations

import hashlib
from typing import BinaryIO

from .constants import COPY_CHUNK_SIZE


def sha256_stream(fh: BinaryIO, chunk_size: int = COPY_CHUNK_SIZE) -> str:
    """Lowercase hex SHA-256 of everything left in ``fh``, read in bounded chunks."""
    h = hashlib.sha256()
    while True:
        buf = fh.read(chunk_size)
        if not buf:
            break
        h.update(buf)
    return h.hexdigest()


def sha256_file(path: str) -> str:
    with open(path, "rb") as fh:
        return sha256_stream(fh)
