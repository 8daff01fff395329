from __future__ import annotations

"""OpenPGP packet framing (RFC 4880, sections 3 and 4).

Covers the pieces needed to read and write public-key encrypted messages:
packet headers in both formats, partial body lengths, multiprecision
integers, string-to-key specifiers and the symmetric cipher table.
"""

import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Tuple

from Cryptodome.Cipher import AES, CAST, DES3

from .constants import COPY_CHUNK_SIZE

# Packet tags
TAG_PKESK = 1
TAG_SIGNATURE = 2
TAG_SKESK = 3
TAG_ONE_PASS_SIGNATURE = 4
TAG_SECRET_KEY = 5
TAG_PUBLIC_KEY = 6
TAG_SECRET_SUBKEY = 7
TAG_COMPRESSED = 8
TAG_SED = 9
TAG_MARKER = 10
TAG_LITERAL = 11
TAG_TRUST = 12
TAG_USER_ID = 13
TAG_PUBLIC_SUBKEY = 14
TAG_USER_ATTRIBUTE = 17
TAG_SEIPD = 18
TAG_MDC = 19

# Public-key algorithms
PK_RSA = 1
PK_RSA_ENCRYPT = 2
PK_RSA_SIGN = 3
PK_ELGAMAL = 16
PK_DSA = 17
PK_ECDH = 18
PK_ECDSA = 19
PK_EDDSA = 22

RSA_ALGOS = (PK_RSA, PK_RSA_ENCRYPT, PK_RSA_SIGN)

# Symmetric algorithms: id -> (module, key length, block size)
SYM_3DES = 2
SYM_CAST5 = 3
SYM_AES128 = 7
SYM_AES192 = 8
SYM_AES256 = 9

CIPHERS = {
    SYM_3DES: (DES3, 24, 8),
    SYM_CAST5: (CAST, 16, 8),
    SYM_AES128: (AES, 16, 16),
    SYM_AES192: (AES, 24, 16),
    SYM_AES256: (AES, 32, 16),
}

# Hash algorithms
HASH_MD5 = 1
HASH_SHA1 = 2
HASH_SHA256 = 8
HASH_SHA384 = 9
HASH_SHA512 = 10
HASH_SHA224 = 11

HASHES = {
    HASH_MD5: hashlib.md5,
    HASH_SHA1: hashlib.sha1,
    HASH_SHA256: hashlib.sha256,
    HASH_SHA384: hashlib.sha384,
    HASH_SHA512: hashlib.sha512,
    HASH_SHA224: hashlib.sha224,
}

# Compression algorithms
COMPRESS_NONE = 0
COMPRESS_ZIP = 1
COMPRESS_ZLIB = 2
COMPRESS_BZIP2 = 3

# S2K specifier types
S2K_SIMPLE = 0
S2K_SALTED = 1
S2K_ITERATED = 3
S2K_GNU = 101

PARTIAL_POWER = 13  # 8 KiB partial body chunks


class PacketFormatError(ValueError):
    """Raised on malformed framing; callers map it to a domain error."""


def cipher_info(algo: int):
    try:
        return CIPHERS[algo]
    except KeyError:
        raise PacketFormatError(f"unsupported symmetric algorithm {algo}") from None


def new_cfb(algo: int, key: bytes, iv: Optional[bytes] = None):
    module, key_len, block = cipher_info(algo)
    if len(key) != key_len:
        raise PacketFormatError(f"key length {len(key)} does not fit symmetric algorithm {algo}")
    return module.new(key, module.MODE_CFB, iv=iv if iv is not None else bytes(block), segment_size=block * 8)


# ---------------------------------------------------------------------------
# Lengths and headers


def encode_length(n: int) -> bytes:
    if n < 192:
        return bytes([n])
    if n < 8384:
        n -= 192
        return bytes([(n >> 8) + 192, n & 0xFF])
    return b"\xff" + n.to_bytes(4, "big")


def packet(tag: int, body: bytes) -> bytes:
    """Frame ``body`` as a new-format packet."""
    return bytes([0xC0 | tag]) + encode_length(len(body)) + body


def old_packet(tag: int, body: bytes) -> bytes:
    """Frame ``body`` as an old-format packet, as key material is usually exported."""
    n = len(body)
    if n < 0x100:
        return bytes([0x80 | (tag << 2)]) + bytes([n]) + body
    if n < 0x10000:
        return bytes([0x80 | (tag << 2) | 1]) + n.to_bytes(2, "big") + body
    return bytes([0x80 | (tag << 2) | 2]) + n.to_bytes(4, "big") + body


def _read_exact(src, n: int) -> bytes:
    data = src.read(n)
    if len(data) != n:
        raise PacketFormatError("truncated packet")
    return data


def _read_new_length(src) -> Tuple[int, bool]:
    o = _read_exact(src, 1)[0]
    if o < 192:
        return o, False
    if o < 224:
        return ((o - 192) << 8) + _read_exact(src, 1)[0] + 192, False
    if o == 255:
        return int.from_bytes(_read_exact(src, 4), "big"), False
    return 1 << (o & 0x1F), True


def read_packet_header(src) -> Optional[Tuple[int, Optional[int], bool]]:
    """Read one packet header; returns (tag, length, partial) or None at EOF.

    ``length`` is None for an old-format packet of indeterminate length,
    whose body runs to the end of the enclosing stream.
    """
    first = src.read(1)
    if not first:
        return None
    b = first[0]
    if not b & 0x80:
        raise PacketFormatError(f"invalid packet header octet 0x{b:02x}")
    if b & 0x40:
        length, partial = _read_new_length(src)
        return b & 0x3F, length, partial
    tag = (b >> 2) & 0x0F
    ltype = b & 0x03
    if ltype == 0:
        return tag, _read_exact(src, 1)[0], False
    if ltype == 1:
        return tag, int.from_bytes(_read_exact(src, 2), "big"), False
    if ltype == 2:
        return tag, int.from_bytes(_read_exact(src, 4), "big"), False
    return tag, None, False


def iter_packets(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield (tag, body) for every packet in an in-memory buffer."""
    src = PeekableSource(_BytesSource(data))
    while True:
        header = read_packet_header(src)
        if header is None:
            return
        tag, length, partial = header
        yield tag, BodyReader(src, length, partial).read()


# ---------------------------------------------------------------------------
# Streams


class _BytesSource:
    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self._pos = 0

    def read(self, n: int = -1) -> bytes:
        if n < 0:
            n = len(self._data) - self._pos
        out = bytes(self._data[self._pos : self._pos + n])
        self._pos += len(out)
        return out


class PeekableSource:
    """Buffered reader over any object with ``read(n)``, adding peek and readline."""

    def __init__(self, raw):
        self._raw = raw
        self._buf = bytearray()
        self._eof = False

    def _fill(self, n: int) -> None:
        while not self._eof and len(self._buf) < n:
            chunk = self._raw.read(max(n - len(self._buf), COPY_CHUNK_SIZE))
            if not chunk:
                self._eof = True
                break
            self._buf += chunk

    def peek(self, n: int) -> bytes:
        self._fill(n)
        return bytes(self._buf[:n])

    def read(self, n: int = -1) -> bytes:
        if n < 0:
            chunks = [bytes(self._buf)]
            self._buf.clear()
            while not self._eof:
                chunk = self._raw.read(COPY_CHUNK_SIZE)
                if not chunk:
                    self._eof = True
                    break
                chunks.append(chunk)
            return b"".join(chunks)
        if len(self._buf) < n:
            self._fill(n)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def readline(self, limit: int = -1) -> bytes:
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                end = idx + 1
                break
            if 0 <= limit <= len(self._buf) or self._eof:
                end = len(self._buf)
                break
            self._fill(len(self._buf) + 1)
        if 0 <= limit < end:
            end = limit
        out = bytes(self._buf[:end])
        del self._buf[:end]
        return out


class BodyReader:
    """Reads one packet body, following partial body length chunks."""

    def __init__(self, src, length: Optional[int], partial: bool):
        self._src = src
        self._remaining = length
        self._partial = partial
        self._done = False

    def read(self, n: int = -1) -> bytes:
        out = bytearray()
        while not self._done and (n < 0 or len(out) < n):
            if self._remaining is None:
                chunk = self._src.read(COPY_CHUNK_SIZE if n < 0 else n - len(out))
                if not chunk:
                    self._done = True
                    break
                out += chunk
                continue
            if self._remaining == 0:
                if not self._partial:
                    self._done = True
                    break
                self._remaining, self._partial = _read_new_length(self._src)
                continue
            want = self._remaining if n < 0 else min(self._remaining, n - len(out))
            chunk = self._src.read(want)
            if not chunk:
                raise PacketFormatError("truncated packet body")
            out += chunk
            self._remaining -= len(chunk)
        return bytes(out)

    def drain(self) -> None:
        while self.read(COPY_CHUNK_SIZE):
            pass


class PartialBodyWriter:
    """Writes one packet whose total length is unknown up front.

    Full chunks go out with partial body length headers; ``close`` emits the
    remainder with a definite length, which terminates the packet.
    """

    def __init__(self, sink: BinaryIO, tag: int, power: int = PARTIAL_POWER):
        self._sink = sink
        self._power = power
        self._chunk = 1 << power
        self._buf = bytearray()
        sink.write(bytes([0xC0 | tag]))

    def write(self, data: bytes) -> int:
        self._buf += data
        while len(self._buf) > self._chunk:
            self._sink.write(bytes([0xE0 | self._power]) + bytes(self._buf[: self._chunk]))
            del self._buf[: self._chunk]
        return len(data)

    def close(self) -> None:
        self._sink.write(encode_length(len(self._buf)) + bytes(self._buf))
        self._buf.clear()


# ---------------------------------------------------------------------------
# Multiprecision integers


def mpi(n: int) -> bytes:
    bits = n.bit_length()
    return bits.to_bytes(2, "big") + n.to_bytes((bits + 7) // 8, "big")


def read_mpi(buf: bytes, off: int) -> Tuple[int, int]:
    if off + 2 > len(buf):
        raise PacketFormatError("truncated multiprecision integer")
    bits = int.from_bytes(buf[off : off + 2], "big")
    end = off + 2 + (bits + 7) // 8
    if end > len(buf):
        raise PacketFormatError("truncated multiprecision integer")
    return int.from_bytes(buf[off + 2 : end], "big"), end


# ---------------------------------------------------------------------------
# String-to-key


def decode_count(c: int) -> int:
    return (16 + (c & 15)) << ((c >> 4) + 6)


@dataclass
class S2K:
    kind: int
    hash_algo: int
    salt: bytes = b""
    count_byte: int = 0
    gnu_mode: int = 0

    @property
    def is_stub(self) -> bool:
        """GnuPG stubs (offline primary or smartcard keys) carry no secret material."""
        return self.kind == S2K_GNU

    def encode(self) -> bytes:
        out = bytes([self.kind, self.hash_algo])
        if self.kind in (S2K_SALTED, S2K_ITERATED):
            out += self.salt
        if self.kind == S2K_ITERATED:
            out += bytes([self.count_byte])
        return out

    def derive(self, passphrase: bytes, key_len: int) -> bytes:
        if self.is_stub:
            raise PacketFormatError("cannot derive a key from a GnuPG stub")
        ctor = HASHES.get(self.hash_algo)
        if ctor is None:
            raise PacketFormatError(f"unsupported S2K hash algorithm {self.hash_algo}")
        data = passphrase if self.kind == S2K_SIMPLE else self.salt + passphrase
        out = b""
        preload = 0
        while len(out) < key_len:
            h = ctor()
            h.update(b"\x00" * preload)
            if self.kind == S2K_ITERATED:
                _update_iterated(h, data, max(decode_count(self.count_byte), len(data)))
            else:
                h.update(data)
            out += h.digest()
            preload += 1
        return out[:key_len]


def _update_iterated(h, data: bytes, count: int) -> None:
    block = data * max(1, COPY_CHUNK_SIZE // len(data))
    remaining = count
    while remaining >= len(block):
        h.update(block)
        remaining -= len(block)
    h.update(block[:remaining])


def parse_s2k(buf: bytes, off: int) -> Tuple[S2K, int]:
    if off + 2 > len(buf):
        raise PacketFormatError("truncated S2K specifier")
    kind, hash_algo = buf[off], buf[off + 1]
    off += 2
    if kind == S2K_SIMPLE:
        return S2K(kind, hash_algo), off
    if kind == S2K_SALTED:
        return S2K(kind, hash_algo, salt=bytes(buf[off : off + 8])), off + 8
    if kind == S2K_ITERATED:
        if off + 9 > len(buf):
            raise PacketFormatError("truncated S2K specifier")
        return S2K(kind, hash_algo, salt=bytes(buf[off : off + 8]), count_byte=buf[off + 8]), off + 9
    if kind == S2K_GNU:
        if buf[off : off + 3] != b"GNU" or off + 4 > len(buf):
            raise PacketFormatError("unrecognised GnuPG S2K extension")
        return S2K(kind, hash_algo, gnu_mode=buf[off + 3]), off + 4
    raise PacketFormatError(f"unsupported S2K type {kind}")
