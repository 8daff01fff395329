from __future__ import annotations

"""OpenPGP transferable keys: parsing, unlocking, generation and export.

Only v4 RSA keys can be used for encryption and decryption. Keyrings holding
other algorithms still parse, so a clear ``UnsupportedKey`` error can name
the key that was rejected.
"""

import hashlib
import time
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union

from Cryptodome.Cipher import PKCS1_v1_5
from Cryptodome.Hash import SHA256
from Cryptodome.PublicKey import RSA
from Cryptodome.Random import get_random_bytes
from Cryptodome.Signature import pkcs1_15

from .armor import PRIVATE_KEY_BLOCK, PUBLIC_KEY_BLOCK, armor, dearmor, is_armored
from .errors import KeyFormatError, KeyUnlockFailure, UnsupportedKey
from .packets import (
    HASH_MD5,
    HASH_SHA256,
    HASH_SHA512,
    PK_DSA,
    PK_ECDH,
    PK_ECDSA,
    PK_EDDSA,
    PK_ELGAMAL,
    PK_RSA,
    PK_RSA_ENCRYPT,
    RSA_ALGOS,
    S2K,
    S2K_ITERATED,
    S2K_SIMPLE,
    SYM_AES128,
    SYM_AES192,
    SYM_AES256,
    TAG_PUBLIC_KEY,
    TAG_PUBLIC_SUBKEY,
    TAG_SECRET_KEY,
    TAG_SECRET_SUBKEY,
    TAG_SIGNATURE,
    TAG_USER_ATTRIBUTE,
    TAG_USER_ID,
    PacketFormatError,
    cipher_info,
    iter_packets,
    mpi,
    new_cfb,
    old_packet,
    parse_s2k,
    read_mpi,
)

# Signature types
SIG_POSITIVE_CERT = 0x13
SIG_SUBKEY_BINDING = 0x18

# Signature subpacket types
SUB_CREATION_TIME = 2
SUB_PREFERRED_SYMMETRIC = 11
SUB_ISSUER = 16
SUB_PREFERRED_HASH = 21
SUB_PREFERRED_COMPRESSION = 22
SUB_KEY_FLAGS = 27
SUB_ISSUER_FINGERPRINT = 33

# Key flags
FLAG_CERTIFY = 0x01
FLAG_SIGN = 0x02
FLAG_ENCRYPT = 0x0C

# S2K usage octets
USAGE_CLEAR = 0
USAGE_SHA1 = 254
USAGE_CHECKSUM = 255

DEFAULT_S2K_COUNT = 0xC0

Passphrase = Union[str, bytes, None]


def _as_bytes(passphrase: Passphrase) -> Optional[bytes]:
    if passphrase is None or isinstance(passphrase, bytes):
        return passphrase
    return passphrase.encode("utf-8")


def _checksum16(data: bytes) -> bytes:
    return (sum(data) & 0xFFFF).to_bytes(2, "big")


# ---------------------------------------------------------------------------
# Signature subpackets


def _subpackets(data: bytes) -> Iterator[Tuple[int, bytes]]:
    off = 0
    while off < len(data):
        o = data[off]
        if o < 192:
            length, off = o, off + 1
        elif o < 255:
            if off + 2 > len(data):
                raise PacketFormatError("truncated signature subpacket")
            length, off = ((o - 192) << 8) + data[off + 1] + 192, off + 2
        else:
            length, off = int.from_bytes(data[off + 1 : off + 5], "big"), off + 5
        if length == 0 or off + length > len(data):
            raise PacketFormatError("truncated signature subpacket")
        yield data[off] & 0x7F, data[off + 1 : off + length]
        off += length


def _subpacket(kind: int, data: bytes) -> bytes:
    # Lengths here are always tiny
    return bytes([len(data) + 1, kind]) + data


def signature_key_flags(sig: bytes) -> Optional[int]:
    """Key flags from a v4 signature's hashed area, or None when absent."""
    if len(sig) < 6 or sig[0] != 4:
        return None
    hashed_len = int.from_bytes(sig[4:6], "big")
    for kind, data in _subpackets(sig[6 : 6 + hashed_len]):
        if kind == SUB_KEY_FLAGS and data:
            return data[0]
    return None


# ---------------------------------------------------------------------------
# Keys


@dataclass
class PGPKey:
    """One primary key or subkey.

    ``public_body`` is the public key packet body, from which the fingerprint
    and all signatures are computed. ``secret_part`` holds the secret key
    packet's remainder verbatim so it can be exported without re-encryption.
    """

    public_body: bytes
    created: int
    algo: int
    subkey: bool = False
    n: int = 0
    e: int = 0
    signatures: List[bytes] = field(default_factory=list)
    secret_part: bytes = b""
    usage: Optional[int] = None
    sym_algo: int = 0
    s2k: Optional[S2K] = None
    iv: bytes = b""
    blob: bytes = b""
    d: int = 0
    p: int = 0
    q: int = 0
    u: int = 0
    unlocked: bool = False

    @property
    def fingerprint(self) -> bytes:
        body = self.public_body
        return hashlib.sha1(b"\x99" + len(body).to_bytes(2, "big") + body).digest()

    @property
    def fingerprint_hex(self) -> str:
        return self.fingerprint.hex().upper()

    @property
    def key_id(self) -> bytes:
        return self.fingerprint[-8:]

    @property
    def is_secret(self) -> bool:
        return self.usage is not None

    @property
    def is_stub(self) -> bool:
        return self.s2k is not None and self.s2k.is_stub

    @property
    def is_rsa(self) -> bool:
        return self.algo in RSA_ALGOS

    def key_flags(self) -> Optional[int]:
        flags = None
        for sig in self.signatures:
            value = signature_key_flags(sig)
            if value is not None:
                flags = value
        return flags

    def can_encrypt(self, flags: Optional[int] = None) -> bool:
        if self.algo not in (PK_RSA, PK_RSA_ENCRYPT):
            return False
        return flags is None or bool(flags & FLAG_ENCRYPT)

    def packet(self, secret: bool = False) -> bytes:
        if secret:
            if not self.is_secret:
                raise KeyFormatError(f"key {self.fingerprint_hex} has no secret material")
            tag = TAG_SECRET_SUBKEY if self.subkey else TAG_SECRET_KEY
            return old_packet(tag, self.public_body + self.secret_part)
        tag = TAG_PUBLIC_SUBKEY if self.subkey else TAG_PUBLIC_KEY
        return old_packet(tag, self.public_body)

    def rsa_public(self) -> RSA.RsaKey:
        if not self.is_rsa:
            raise UnsupportedKey(f"key {self.fingerprint_hex} uses unsupported algorithm {self.algo}")
        return RSA.construct((self.n, self.e))

    def rsa_private(self) -> RSA.RsaKey:
        if not self.unlocked:
            raise KeyUnlockFailure(f"key {self.fingerprint_hex} is locked")
        return RSA.construct((self.n, self.e, self.d, self.p, self.q))

    def encrypt_session(self, message: bytes) -> int:
        return int.from_bytes(PKCS1_v1_5.new(self.rsa_public()).encrypt(message), "big")

    def decrypt_session(self, value: int) -> Optional[bytes]:
        """PKCS#1 v1.5 decryption; returns None when the padding is wrong."""
        k = (self.n.bit_length() + 7) // 8
        if value.bit_length() > k * 8:
            return None
        try:
            return PKCS1_v1_5.new(self.rsa_private()).decrypt(value.to_bytes(k, "big"), None)
        except ValueError:
            return None

    def unlock(self, passphrase: Optional[bytes]) -> None:
        if not self.is_secret or self.unlocked or self.is_stub:
            return
        if self.usage == USAGE_CLEAR:
            plain = self.blob
        else:
            if passphrase is None:
                raise KeyUnlockFailure(f"key {self.fingerprint_hex} is protected and no passphrase was given")
            try:
                _, key_len, _ = cipher_info(self.sym_algo)
                assert self.s2k is not None
                session = self.s2k.derive(passphrase, key_len)
                plain = new_cfb(self.sym_algo, session, self.iv).decrypt(self.blob)
            except PacketFormatError as exc:
                raise UnsupportedKey(f"key {self.fingerprint_hex}: {exc}") from exc
        if self.usage == USAGE_SHA1:
            material, check = plain[:-20], plain[-20:]
            ok = len(plain) > 20 and hashlib.sha1(material).digest() == check
        else:
            material, check = plain[:-2], plain[-2:]
            ok = len(plain) > 2 and _checksum16(material) == check
        if not ok:
            if self.usage == USAGE_CLEAR:
                raise KeyFormatError(f"key {self.fingerprint_hex}: secret material checksum mismatch")
            raise KeyUnlockFailure(f"wrong passphrase for key {self.fingerprint_hex}")
        if self.is_rsa:
            try:
                self.d, off = read_mpi(material, 0)
                self.p, off = read_mpi(material, off)
                self.q, off = read_mpi(material, off)
                self.u, off = read_mpi(material, off)
            except PacketFormatError as exc:
                raise KeyFormatError(f"key {self.fingerprint_hex}: {exc}") from exc
        self.unlocked = True


@dataclass
class UserID:
    uid: str
    raw: bytes
    signatures: List[bytes] = field(default_factory=list)


@dataclass
class KeyEntity:
    """A primary key with its user IDs and subkeys."""

    primary: PGPKey
    user_ids: List[UserID] = field(default_factory=list)
    subkeys: List[PGPKey] = field(default_factory=list)

    @property
    def fingerprint(self) -> str:
        return self.primary.fingerprint_hex

    @property
    def has_secret(self) -> bool:
        return any(k.is_secret for k in self.keys())

    def keys(self) -> List[PGPKey]:
        return [self.primary] + self.subkeys

    def _primary_flags(self) -> Optional[int]:
        flags = self.primary.key_flags()
        for uid in self.user_ids:
            for sig in uid.signatures:
                value = signature_key_flags(sig)
                if value is not None:
                    flags = value
        return flags

    def encryption_key(self) -> PGPKey:
        """The newest RSA key allowed to encrypt, preferring subkeys."""
        for sub in reversed(self.subkeys):
            if sub.can_encrypt(sub.key_flags()):
                return sub
        if self.primary.can_encrypt(self._primary_flags()):
            return self.primary
        raise UnsupportedKey(f"key {self.fingerprint} has no RSA key usable for encryption")

    def find(self, key_id: bytes) -> Optional[PGPKey]:
        for key in self.keys():
            if key.key_id == key_id:
                return key
        return None

    def unlock(self, passphrase: Passphrase) -> None:
        secret = _as_bytes(passphrase)
        for key in self.keys():
            key.unlock(secret)

    def export_public(self) -> bytes:
        out = bytearray(self.primary.packet())
        out += self._tail(secret=False)
        return bytes(out)

    def export_secret(self) -> bytes:
        out = bytearray(self.primary.packet(secret=True))
        out += self._tail(secret=True)
        return bytes(out)

    def _tail(self, secret: bool) -> bytes:
        out = bytearray()
        for sig in self.primary.signatures:
            out += old_packet(TAG_SIGNATURE, sig)
        for uid in self.user_ids:
            out += old_packet(TAG_USER_ID, uid.raw)
            for sig in uid.signatures:
                out += old_packet(TAG_SIGNATURE, sig)
        for sub in self.subkeys:
            out += sub.packet(secret=secret and sub.is_secret)
            for sig in sub.signatures:
                out += old_packet(TAG_SIGNATURE, sig)
        return bytes(out)


# ---------------------------------------------------------------------------
# Parsing


def _public_end(body: bytes, algo: int, off: int, tag: int) -> int:
    counts = {PK_DSA: 4, PK_ELGAMAL: 3}
    if algo in RSA_ALGOS:
        for _ in range(2):
            _, off = read_mpi(body, off)
        return off
    if algo in counts:
        for _ in range(counts[algo]):
            _, off = read_mpi(body, off)
        return off
    if algo in (PK_ECDSA, PK_EDDSA, PK_ECDH):
        if off >= len(body):
            raise PacketFormatError("truncated curve OID")
        off += 1 + body[off]
        _, off = read_mpi(body, off)
        if algo == PK_ECDH:
            if off >= len(body):
                raise PacketFormatError("truncated KDF parameters")
            off += 1 + body[off]
        return off
    if tag in (TAG_PUBLIC_KEY, TAG_PUBLIC_SUBKEY):
        return len(body)
    raise PacketFormatError(f"unsupported public-key algorithm {algo}")


def parse_key_packet(tag: int, body: bytes) -> PGPKey:
    if len(body) < 6:
        raise PacketFormatError("truncated key packet")
    if body[0] != 4:
        raise PacketFormatError(f"unsupported key packet version {body[0]}")
    created = int.from_bytes(body[1:5], "big")
    algo = body[5]
    end = _public_end(body, algo, 6, tag)
    key = PGPKey(
        public_body=bytes(body[:end]),
        created=created,
        algo=algo,
        subkey=tag in (TAG_PUBLIC_SUBKEY, TAG_SECRET_SUBKEY),
    )
    if algo in RSA_ALGOS:
        key.n, off = read_mpi(body, 6)
        key.e, _ = read_mpi(body, off)
    if tag in (TAG_SECRET_KEY, TAG_SECRET_SUBKEY):
        _parse_secret(key, body, end)
    return key


def _parse_secret(key: PGPKey, body: bytes, off: int) -> None:
    if off >= len(body):
        raise PacketFormatError("truncated secret key packet")
    key.secret_part = bytes(body[off:])
    usage = body[off]
    off += 1
    if usage in (USAGE_SHA1, USAGE_CHECKSUM):
        if off >= len(body):
            raise PacketFormatError("truncated secret key packet")
        key.sym_algo = body[off]
        key.s2k, off = parse_s2k(body, off + 1)
        if key.s2k.is_stub:
            key.usage = usage
            return
    elif usage != USAGE_CLEAR:
        # Legacy form: the usage octet is the cipher, keyed by MD5 of the passphrase
        key.sym_algo = usage
        key.s2k = S2K(S2K_SIMPLE, HASH_MD5)
        usage = USAGE_CHECKSUM
    key.usage = usage
    if usage != USAGE_CLEAR:
        _, _, block = cipher_info(key.sym_algo)
        key.iv = bytes(body[off : off + block])
        off += block
    key.blob = bytes(body[off:])


def read_keyring(data: bytes) -> List[KeyEntity]:
    """Parse armored or binary key data into key entities, in file order."""
    try:
        if is_armored(data):
            _, data = dearmor(data)
        return _read_packets(data)
    except ValueError as exc:
        raise KeyFormatError(f"invalid OpenPGP key data: {exc}") from exc


def _read_packets(data: bytes) -> List[KeyEntity]:
    entities: List[KeyEntity] = []
    current: Optional[KeyEntity] = None
    target: List[bytes] = []
    for tag, body in iter_packets(data):
        if tag in (TAG_PUBLIC_KEY, TAG_SECRET_KEY):
            current = KeyEntity(primary=parse_key_packet(tag, body))
            entities.append(current)
            target = current.primary.signatures
        elif current is None:
            continue
        elif tag == TAG_USER_ID:
            uid = UserID(uid=body.decode("utf-8", "replace"), raw=body)
            current.user_ids.append(uid)
            target = uid.signatures
        elif tag == TAG_USER_ATTRIBUTE:
            target = []
        elif tag in (TAG_PUBLIC_SUBKEY, TAG_SECRET_SUBKEY):
            sub = parse_key_packet(tag, body)
            current.subkeys.append(sub)
            target = sub.signatures
        elif tag == TAG_SIGNATURE:
            target.append(body)
    if not entities:
        raise KeyFormatError("no OpenPGP keys found in key data")
    return entities


# ---------------------------------------------------------------------------
# Generation


def _protect(material: bytes, passphrase: Optional[bytes]) -> bytes:
    if passphrase is None:
        return bytes([USAGE_CLEAR]) + material + _checksum16(material)
    s2k = S2K(S2K_ITERATED, HASH_SHA256, salt=get_random_bytes(8), count_byte=DEFAULT_S2K_COUNT)
    iv = get_random_bytes(16)
    sealed = new_cfb(SYM_AES256, s2k.derive(passphrase, 32), iv).encrypt(material + hashlib.sha1(material).digest())
    return bytes([USAGE_SHA1, SYM_AES256]) + s2k.encode() + iv + sealed


def _key_from_rsa(rsa: RSA.RsaKey, created: int, subkey: bool, passphrase: Optional[bytes]) -> PGPKey:
    p, q = sorted((rsa.p, rsa.q))
    u = pow(p, -1, q)
    public_body = bytes([4]) + created.to_bytes(4, "big") + bytes([PK_RSA]) + mpi(rsa.n) + mpi(rsa.e)
    secret_part = _protect(mpi(rsa.d) + mpi(p) + mpi(q) + mpi(u), passphrase)
    key = PGPKey(public_body=public_body, created=created, algo=PK_RSA, subkey=subkey, n=rsa.n, e=rsa.e)
    key.secret_part = secret_part
    key.usage = secret_part[0]
    key.d, key.p, key.q, key.u = rsa.d, p, q, u
    key.unlocked = True
    return key


def _hashed_key(key: PGPKey) -> bytes:
    return b"\x99" + len(key.public_body).to_bytes(2, "big") + key.public_body


def _sign(signer: PGPKey, sig_type: int, material: bytes, hashed: bytes, created: int) -> bytes:
    hashed = _subpacket(SUB_CREATION_TIME, created.to_bytes(4, "big")) + hashed
    hashed += _subpacket(SUB_ISSUER_FINGERPRINT, b"\x04" + signer.fingerprint)
    prefix = bytes([4, sig_type, signer.algo, HASH_SHA256]) + len(hashed).to_bytes(2, "big") + hashed
    trailer = b"\x04\xff" + len(prefix).to_bytes(4, "big")
    digest = SHA256.new(material + prefix + trailer)
    signature = pkcs1_15.new(signer.rsa_private()).sign(digest)
    unhashed = _subpacket(SUB_ISSUER, signer.key_id)
    return (
        prefix
        + len(unhashed).to_bytes(2, "big")
        + unhashed
        + digest.digest()[:2]
        + mpi(int.from_bytes(signature, "big"))
    )


def generate_key(
    name: str,
    email: str,
    passphrase: Passphrase = None,
    bits: int = 2048,
    created: Optional[int] = None,
) -> KeyEntity:
    """Create an RSA primary key with an RSA encryption subkey, both self-signed.

    With a passphrase, secret material is sealed with AES-256 under an
    iterated and salted SHA-256 S2K, as GnuPG does by default.
    """
    secret = _as_bytes(passphrase)
    stamp = int(time.time()) if created is None else created
    primary = _key_from_rsa(RSA.generate(bits), stamp, False, secret)
    sub = _key_from_rsa(RSA.generate(bits), stamp, True, secret)

    text = f"{name} <{email}>" if name else f"<{email}>"
    raw = text.encode("utf-8")
    cert_subpackets = (
        _subpacket(SUB_KEY_FLAGS, bytes([FLAG_CERTIFY | FLAG_SIGN]))
        + _subpacket(SUB_PREFERRED_SYMMETRIC, bytes([SYM_AES256, SYM_AES192, SYM_AES128]))
        + _subpacket(SUB_PREFERRED_HASH, bytes([HASH_SHA256, HASH_SHA512]))
        + _subpacket(SUB_PREFERRED_COMPRESSION, bytes([2, 1, 0]))
    )
    uid_material = _hashed_key(primary) + b"\xb4" + len(raw).to_bytes(4, "big") + raw
    uid = UserID(uid=text, raw=raw)
    uid.signatures.append(_sign(primary, SIG_POSITIVE_CERT, uid_material, cert_subpackets, stamp))

    bind_material = _hashed_key(primary) + _hashed_key(sub)
    sub.signatures.append(
        _sign(primary, SIG_SUBKEY_BINDING, bind_material, _subpacket(SUB_KEY_FLAGS, bytes([FLAG_ENCRYPT])), stamp)
    )
    return KeyEntity(primary=primary, user_ids=[uid], subkeys=[sub])


def export_public_key(entity: KeyEntity, armored: bool = True) -> bytes:
    data = entity.export_public()
    return armor(PUBLIC_KEY_BLOCK, data).encode("ascii") if armored else data


def export_secret_key(entity: KeyEntity, armored: bool = True) -> bytes:
    if not entity.has_secret:
        raise KeyFormatError(f"key {entity.fingerprint} has no secret material")
    data = entity.export_secret()
    return armor(PRIVATE_KEY_BLOCK, data).encode("ascii") if armored else data
