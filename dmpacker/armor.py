from __future__ import annotations

"""OpenPGP ASCII armor (RFC 4880, section 6).

Whole-buffer helpers serve key blocks, which are small; ``ArmorWriter`` and
``ArmorReader`` stream message payloads so packages of any size can be
armored without holding them in memory.
"""

import base64
import binascii
from typing import BinaryIO, Optional, Tuple

_CRC24_INIT = 0xB704CE
_CRC24_POLY = 0x1864CFB
_LINE_BYTES = 48  # 64 base64 characters per line

MESSAGE = "MESSAGE"
PUBLIC_KEY_BLOCK = "PUBLIC KEY BLOCK"
PRIVATE_KEY_BLOCK = "PRIVATE KEY BLOCK"


def crc24(data: bytes, crc: int = _CRC24_INIT) -> int:
    for b in data:
        crc ^= b << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= _CRC24_POLY
    return crc & 0xFFFFFF


def _checksum_line(crc: int) -> bytes:
    return b"=" + base64.b64encode(crc.to_bytes(3, "big")) + b"\n"


def is_armored(data: bytes) -> bool:
    return data.lstrip()[:15] == b"-----BEGIN PGP "


def armor(kind: str, data: bytes) -> str:
    lines = [f"-----BEGIN PGP {kind}-----", ""]
    for i in range(0, len(data), _LINE_BYTES):
        lines.append(base64.b64encode(data[i : i + _LINE_BYTES]).decode("ascii"))
    lines.append(_checksum_line(crc24(data)).decode("ascii").rstrip("\n"))
    lines.append(f"-----END PGP {kind}-----")
    return "\n".join(lines) + "\n"


def dearmor(text: bytes) -> Tuple[str, bytes]:
    """Decode the first armored block in ``text``; returns (kind, data)."""
    lines = text.replace(b"\r\n", b"\n").split(b"\n")
    it = iter(lines)
    kind = None
    for line in it:
        line = line.strip()
        if line.startswith(b"-----BEGIN PGP ") and line.endswith(b"-----"):
            kind = line[15:-5].decode("ascii", "replace")
            break
    if kind is None:
        raise ValueError("no armored OpenPGP block found")
    body = []
    checksum: Optional[bytes] = None
    in_headers = True
    for line in it:
        line = line.strip()
        if in_headers:
            if not line:
                in_headers = False
                continue
            if b": " in line:
                continue
            in_headers = False
        if line.startswith(b"-----END PGP "):
            break
        if line.startswith(b"=") and len(line) == 5:
            checksum = line[1:]
            continue
        if line:
            body.append(line)
    else:
        raise ValueError("armored block is not terminated")
    try:
        data = base64.b64decode(b"".join(body), validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 in armored block: {exc}") from exc
    if checksum is not None and base64.b64decode(checksum) != crc24(data).to_bytes(3, "big"):
        raise ValueError("armor checksum mismatch")
    return kind, data


class ArmorWriter:
    """Streams base64 lines for one armored block into ``sink``."""

    def __init__(self, sink: BinaryIO, kind: str = MESSAGE):
        self._sink = sink
        self._kind = kind
        self._buf = bytearray()
        self._crc = _CRC24_INIT
        self._closed = False
        sink.write(f"-----BEGIN PGP {kind}-----\n\n".encode("ascii"))

    def write(self, data: bytes) -> int:
        self._crc = crc24(data, self._crc)
        self._buf += data
        full = len(self._buf) - len(self._buf) % _LINE_BYTES
        if full:
            chunk = bytes(self._buf[:full])
            del self._buf[:full]
            out = bytearray()
            for i in range(0, full, _LINE_BYTES):
                out += base64.b64encode(chunk[i : i + _LINE_BYTES]) + b"\n"
            self._sink.write(bytes(out))
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._buf:
            self._sink.write(base64.b64encode(bytes(self._buf)) + b"\n")
            self._buf.clear()
        self._sink.write(_checksum_line(self._crc & 0xFFFFFF))
        self._sink.write(f"-----END PGP {self._kind}-----\n".encode("ascii"))


class ArmorReader:
    """Decodes an armored block line by line from a source offering ``readline``."""

    def __init__(self, source, max_line: int = 64 * 1024):
        self._src = source
        self._max_line = max_line
        self._buf = bytearray()
        self._pending = b""
        self._crc = _CRC24_INIT
        self._checksum: Optional[bytes] = None
        self._done = False
        self.kind = self._read_begin()

    def _readline(self) -> bytes:
        line = self._src.readline(self._max_line)
        if line and not line.endswith(b"\n") and len(line) >= self._max_line:
            raise ValueError("armor line too long")
        return line

    def _read_begin(self) -> str:
        while True:
            line = self._readline()
            if not line:
                raise ValueError("no armored OpenPGP block found")
            line = line.strip()
            if line.startswith(b"-----BEGIN PGP ") and line.endswith(b"-----"):
                kind = line[15:-5].decode("ascii", "replace")
                break
        # Armor headers end at the first blank line
        while True:
            line = self._readline()
            if not line:
                raise ValueError("armored block is not terminated")
            stripped = line.strip()
            if not stripped:
                return kind
            if b": " not in stripped:
                self._take(stripped)
                return kind

    def _take(self, line: bytes) -> bool:
        if line.startswith(b"-----END PGP "):
            self._finish()
            return False
        if line.startswith(b"=") and len(line) == 5:
            self._checksum = line[1:]
            return True
        text = self._pending + line
        usable = len(text) - len(text) % 4
        self._pending = text[usable:]
        if usable:
            try:
                data = base64.b64decode(text[:usable], validate=True)
            except binascii.Error as exc:
                raise ValueError(f"invalid base64 in armored block: {exc}") from exc
            self._crc = crc24(data, self._crc)
            self._buf += data
        return True

    def _finish(self) -> None:
        self._done = True
        if self._pending:
            raise ValueError("armored block has a truncated base64 group")
        if self._checksum is not None:
            if base64.b64decode(self._checksum) != (self._crc & 0xFFFFFF).to_bytes(3, "big"):
                raise ValueError("armor checksum mismatch")

    def read(self, n: int = -1) -> bytes:
        while not self._done and (n < 0 or len(self._buf) < n):
            line = self._readline()
            if not line:
                raise ValueError("armored block is not terminated")
            stripped = line.strip()
            if stripped:
                self._take(stripped)
        if n < 0:
            n = len(self._buf)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out
