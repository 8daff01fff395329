from __future__ import annotations

"""Streaming OpenPGP messages: one PKESK packet followed by integrity-protected data.

Writing produces ``PKESK(v3, RSA) | SEIPD(v1)[prefix | literal | MDC]``. The
literal and encrypted packets use partial body lengths, so neither side ever
needs the payload size or holds more than a chunk in memory. Reading also
accepts compressed data packets and one-pass signature wrappers, which
GnuPG emits by default.
"""

import bz2
import hashlib
import logging
import time
import zlib
from typing import BinaryIO, List, Optional, Tuple

from Cryptodome.Random import get_random_bytes

from .armor import MESSAGE, ArmorReader, ArmorWriter
from .constants import COPY_CHUNK_SIZE
from .errors import MalformedCiphertext, NoMatchingKey, UnsupportedKey
from .keys import KeyEntity, PGPKey
from .packets import (
    COMPRESS_BZIP2,
    COMPRESS_NONE,
    COMPRESS_ZIP,
    COMPRESS_ZLIB,
    SYM_AES256,
    TAG_COMPRESSED,
    TAG_LITERAL,
    TAG_MARKER,
    TAG_ONE_PASS_SIGNATURE,
    TAG_PKESK,
    TAG_SED,
    TAG_SEIPD,
    TAG_SIGNATURE,
    TAG_SKESK,
    BodyReader,
    PacketFormatError,
    PartialBodyWriter,
    PeekableSource,
    cipher_info,
    mpi,
    new_cfb,
    packet,
    read_mpi,
    read_packet_header,
)

logger = logging.getLogger(__name__)

MDC_HEADER = b"\xd3\x14"
MDC_LEN = 22
_PKESK_VERSION = 3
_SEIPD_VERSION = 1
_MAX_PKESK = 64 * 1024


def session_key_payload(sym_algo: int, session_key: bytes) -> bytes:
    return bytes([sym_algo]) + session_key + (sum(session_key) & 0xFFFF).to_bytes(2, "big")


def pkesk_body(recipient: PGPKey, sym_algo: int, session_key: bytes) -> bytes:
    encrypted = recipient.encrypt_session(session_key_payload(sym_algo, session_key))
    return bytes([_PKESK_VERSION]) + recipient.key_id + bytes([recipient.algo]) + mpi(encrypted)


class _SeipdEncryptor:
    """Plaintext sink that encrypts into a partial-length SEIPD packet."""

    def __init__(self, out, sym_algo: int, session_key: bytes):
        _, _, block = cipher_info(sym_algo)
        self._body = PartialBodyWriter(out, TAG_SEIPD)
        self._body.write(bytes([_SEIPD_VERSION]))
        self._cipher = new_cfb(sym_algo, session_key)
        self._mdc = hashlib.sha1()
        prefix = get_random_bytes(block)
        self.write(prefix + prefix[-2:])

    def write(self, data: bytes) -> int:
        self._mdc.update(data)
        self._body.write(self._cipher.encrypt(data))
        return len(data)

    def close(self) -> None:
        self._mdc.update(MDC_HEADER)
        self._body.write(self._cipher.encrypt(MDC_HEADER + self._mdc.digest()))
        self._body.close()


class EncryptingWriter:
    """Encrypts everything written to it for one recipient key.

    ``close`` writes the MDC and packet terminators; ``abort`` stops without
    them. The sink is never closed here.
    """

    def __init__(
        self,
        sink: BinaryIO,
        recipient: PGPKey,
        *,
        armored: bool = False,
        sym_algo: int = SYM_AES256,
        filename: str = "",
        timestamp: Optional[int] = None,
    ):
        _, key_len, _ = cipher_info(sym_algo)
        self._armor = ArmorWriter(sink, MESSAGE) if armored else None
        out = self._armor if self._armor is not None else sink
        session_key = get_random_bytes(key_len)
        out.write(packet(TAG_PKESK, pkesk_body(recipient, sym_algo, session_key)))
        self._seipd = _SeipdEncryptor(out, sym_algo, session_key)
        self._literal = PartialBodyWriter(self._seipd, TAG_LITERAL)
        name = filename.encode("utf-8")[:255]
        stamp = int(time.time()) if timestamp is None else timestamp
        self._literal.write(b"b" + bytes([len(name)]) + name + stamp.to_bytes(4, "big"))
        self._closed = False
        logger.debug("encrypting for key %s", recipient.fingerprint_hex)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed encrypting stream")
        return self._literal.write(bytes(data))

    def flush(self) -> None:
        pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._literal.close()
        self._seipd.close()
        if self._armor is not None:
            self._armor.close()

    def abort(self) -> None:
        self._closed = True


class _SeipdDecryptor:
    """Decrypts a SEIPD body, holding back the trailing MDC until the end.

    Plaintext is released only once at least ``MDC_LEN`` bytes follow it, and
    the MDC is checked when the body is exhausted.
    """

    def __init__(self, body: BodyReader, sym_algo: int, session_key: bytes):
        _, _, block = cipher_info(sym_algo)
        self._body = body
        self._cipher = new_cfb(sym_algo, session_key)
        self._hash = hashlib.sha1()
        self._pending = bytearray()
        self._eof = False
        prefix = self.read(block + 2)
        if len(prefix) != block + 2 or prefix[block - 2 : block] != prefix[block:]:
            raise MalformedCiphertext("session key does not decrypt the message (prefix check failed)")

    def _fill(self, want: int) -> None:
        while not self._eof and len(self._pending) < want + MDC_LEN:
            chunk = self._body.read(COPY_CHUNK_SIZE)
            if not chunk:
                self._eof = True
                self._verify()
                break
            self._pending += self._cipher.decrypt(chunk)

    def _verify(self) -> None:
        if len(self._pending) < MDC_LEN:
            raise MalformedCiphertext("encrypted data is truncated")
        tail = bytes(self._pending[-MDC_LEN:])
        del self._pending[-MDC_LEN:]
        h = self._hash.copy()
        h.update(self._pending)
        h.update(MDC_HEADER)
        if tail[:2] != MDC_HEADER or tail[2:] != h.digest():
            raise MalformedCiphertext("modification detected: integrity check failed")

    def read(self, n: int = -1) -> bytes:
        if n < 0:
            chunks = []
            while True:
                chunk = self.read(COPY_CHUNK_SIZE)
                if not chunk:
                    return b"".join(chunks)
                chunks.append(chunk)
        self._fill(n)
        avail = len(self._pending) if self._eof else max(0, len(self._pending) - MDC_LEN)
        take = min(n, avail)
        out = bytes(self._pending[:take])
        del self._pending[:take]
        self._hash.update(out)
        return out


class _Inflater:
    """Decompresses the body of a compressed data packet."""

    def __init__(self, body: BodyReader, algo: int):
        self._body = body
        self._buf = bytearray()
        self._done = False
        if algo == COMPRESS_ZIP:
            self._d = zlib.decompressobj(-15)
        elif algo == COMPRESS_ZLIB:
            self._d = zlib.decompressobj()
        elif algo == COMPRESS_BZIP2:
            self._d = bz2.BZ2Decompressor()
        elif algo == COMPRESS_NONE:
            self._d = None
        else:
            raise MalformedCiphertext(f"unsupported compression algorithm {algo}")

    def read(self, n: int = COPY_CHUNK_SIZE) -> bytes:
        if self._d is None:
            return self._body.read(n)
        while not self._done and (n < 0 or len(self._buf) < n):
            chunk = self._body.read(COPY_CHUNK_SIZE)
            if not chunk:
                self._done = True
                if isinstance(self._d, bz2.BZ2Decompressor):
                    break
                self._buf += self._d.flush()
                break
            try:
                self._buf += self._d.decompress(chunk)
            except (zlib.error, OSError, EOFError) as exc:
                raise MalformedCiphertext(f"corrupt compressed data: {exc}") from exc
        if n < 0:
            n = len(self._buf)
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out


class DecryptingReader:
    """Reads the literal data of an encrypted message, verifying its MDC.

    The integrity check completes when the last byte has been read; a
    mismatch raises ``MalformedCiphertext`` from that final ``read``.
    """

    def __init__(self, source: BinaryIO, keyring: List[KeyEntity]):
        self._keyring = keyring
        self._done = False
        try:
            src = PeekableSource(source)
            first = src.peek(1)
            if not first:
                raise MalformedCiphertext("encrypted stream is empty")
            if not first[0] & 0x80:
                src = PeekableSource(ArmorReader(src))
            body, sym_algo, session_key = self._open_seipd(src)
            version = body.read(1)
            if version != bytes([_SEIPD_VERSION]):
                raise MalformedCiphertext("unsupported encrypted data packet version")
            self._plain = _SeipdDecryptor(body, sym_algo, session_key)
            self._literal = self._open_literal(PeekableSource(self._plain))
        except ValueError as exc:
            raise MalformedCiphertext(f"invalid OpenPGP message: {exc}") from exc

    def _open_seipd(self, src) -> Tuple[BodyReader, int, bytes]:
        session: Optional[Tuple[int, bytes]] = None
        recipients: List[str] = []
        while True:
            header = read_packet_header(src)
            if header is None:
                raise MalformedCiphertext("no encrypted data packet found")
            tag, length, partial = header
            body = BodyReader(src, length, partial)
            if tag == TAG_PKESK:
                if length is None or partial or length > _MAX_PKESK:
                    raise MalformedCiphertext("malformed public-key encrypted session key packet")
                found, key_id = self._decrypt_session(body.read())
                recipients.append(key_id)
                if session is None:
                    session = found
            elif tag == TAG_SEIPD:
                if session is None:
                    raise NoMatchingKey(
                        "message is not encrypted to the given private key (recipients: "
                        + (", ".join(recipients) or "none")
                        + ")"
                    )
                return body, session[0], session[1]
            elif tag == TAG_SED:
                raise MalformedCiphertext("message uses legacy encryption without integrity protection")
            elif tag in (TAG_SKESK, TAG_MARKER):
                body.drain()
            else:
                raise MalformedCiphertext(f"unexpected packet type {tag} in encrypted message")

    def _decrypt_session(self, body: bytes) -> Tuple[Optional[Tuple[int, bytes]], str]:
        if len(body) < 10 or body[0] != _PKESK_VERSION:
            raise MalformedCiphertext("unsupported public-key encrypted session key packet")
        key_id = bytes(body[1:9])
        algo = body[9]
        if algo not in (1, 2):
            return None, key_id.hex().upper()
        value, _ = read_mpi(body, 10)
        for key in self._candidates(key_id):
            payload = key.decrypt_session(value)
            if payload is None or len(payload) < 3:
                continue
            sym_algo, session_key, check = payload[0], payload[1:-2], payload[-2:]
            if (sum(session_key) & 0xFFFF).to_bytes(2, "big") != check:
                continue
            try:
                _, key_len, _ = cipher_info(sym_algo)
            except PacketFormatError as exc:
                raise UnsupportedKey(str(exc)) from exc
            if len(session_key) != key_len:
                continue
            logger.debug("session key recovered with key %s", key.fingerprint_hex)
            return (sym_algo, session_key), key_id.hex().upper()
        return None, key_id.hex().upper()

    def _candidates(self, key_id: bytes) -> List[PGPKey]:
        keys = [k for entity in self._keyring for k in entity.keys() if k.unlocked and k.is_rsa]
        if key_id == bytes(8):
            # Anonymous recipient: try every key
            return keys
        return [k for k in keys if k.key_id == key_id]

    def _open_literal(self, src) -> BodyReader:
        while True:
            header = read_packet_header(src)
            if header is None:
                raise MalformedCiphertext("encrypted message carries no literal data")
            tag, length, partial = header
            body = BodyReader(src, length, partial)
            if tag == TAG_COMPRESSED:
                algo = body.read(1)
                if not algo:
                    raise MalformedCiphertext("truncated compressed data packet")
                src = PeekableSource(_Inflater(body, algo[0]))
                continue
            if tag in (TAG_ONE_PASS_SIGNATURE, TAG_MARKER):
                body.drain()
                continue
            if tag == TAG_LITERAL:
                head = body.read(2)
                if len(head) != 2:
                    raise MalformedCiphertext("truncated literal data packet")
                if len(body.read(head[1] + 4)) != head[1] + 4:
                    raise MalformedCiphertext("truncated literal data packet")
                self._src = src
                return body
            raise MalformedCiphertext(f"unexpected packet type {tag} inside encrypted data")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def read(self, n: int = -1) -> bytes:
        if self._done:
            return b""
        try:
            data = self._literal.read(n)
            if not data or n < 0:
                self._finish()
            return data
        except ValueError as exc:
            raise MalformedCiphertext(f"invalid OpenPGP message: {exc}") from exc

    def _finish(self) -> None:
        # Trailing packets (signatures) are skipped, then the MDC is checked at EOF
        self._done = True
        while True:
            header = read_packet_header(self._src)
            if header is None:
                break
            tag, length, partial = header
            if tag != TAG_SIGNATURE:
                raise MalformedCiphertext(f"unexpected packet type {tag} after literal data")
            BodyReader(self._src, length, partial).drain()
        self._plain.read()

    def close(self) -> None:
        self._done = True
