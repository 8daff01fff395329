from __future__ import annotations

"""Key resolution and the encrypting/decrypting stream layers of a package."""

import logging
import os
from typing import BinaryIO, List, Mapping, Optional

import requests

from .constants import DEFAULT_KEYSERVER, HTTP_TIMEOUT, KEYPASS_ENV
from .errors import KeyFormatError, MissingKey, ServiceError, UnsupportedKey
from .keys import KeyEntity, read_keyring
from .message import DecryptingReader, EncryptingWriter

logger = logging.getLogger(__name__)

USER_AGENT = "dmpacker/0.1"


def load_key_file(path: str) -> bytes:
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except FileNotFoundError as exc:
        raise MissingKey(f"key file not found: {path}") from exc
    if not data.strip():
        raise KeyFormatError(f"key file is empty: {path}")
    return data


def lookup_public_key(identity: str, keyserver: str = DEFAULT_KEYSERVER, *, session=None, timeout: int = HTTP_TIMEOUT) -> bytes:
    """Fetch an armored public key for ``identity`` (usually an email) over HKP."""
    http = session if session is not None else requests
    url = keyserver.rstrip("/") + "/pks/lookup"
    params = {"op": "get", "options": "mr", "search": identity}
    logger.info("looking up public key for '%s' on %s", identity, keyserver)
    try:
        resp = http.get(url, params=params, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.RequestException as exc:
        raise ServiceError(f"keyserver lookup failed for '{identity}': {exc}") from exc
    if resp.status_code == 404:
        raise MissingKey(f"no public key found on {keyserver} for '{identity}'")
    if resp.status_code >= 400:
        raise ServiceError(f"keyserver lookup for '{identity}' returned HTTP {resp.status_code}")
    if not resp.content or not resp.content.strip():
        raise MissingKey(f"no public key found on {keyserver} for '{identity}'")
    return resp.content


def resolve_public_key(
    *,
    key_path: str = "",
    key_email: str = "",
    keyserver: str = DEFAULT_KEYSERVER,
    session=None,
) -> bytes:
    """Key bytes for packing: the local file wins over a keyserver lookup."""
    if key_path:
        return load_key_file(key_path)
    if key_email:
        return lookup_public_key(key_email, keyserver, session=session)
    raise MissingKey("a key path or key email is required for encryption")


def resolve_passphrase(key_pass_path: str = "", environ: Optional[Mapping[str, str]] = None) -> Optional[bytes]:
    """Passphrase for the private key, or None for an unprotected key.

    The ``PACKER_KEYPASS`` environment variable takes priority over the
    passphrase file. Surrounding whitespace is trimmed from both.
    """
    env = os.environ if environ is None else environ
    value = env.get(KEYPASS_ENV)
    if value:
        return value.strip().encode("utf-8")
    if key_pass_path:
        try:
            with open(key_pass_path, "rb") as fh:
                return fh.read().strip()
        except FileNotFoundError as exc:
            raise MissingKey(f"passphrase file not found: {key_pass_path}") from exc
    return None


def _single_entity(key_data: bytes) -> KeyEntity:
    entities = read_keyring(key_data)
    if len(entities) > 1:
        fprs = ", ".join(e.fingerprint for e in entities)
        raise UnsupportedKey(f"key data holds {len(entities)} keys ({fprs}); exactly one is supported")
    return entities[0]


def open_encrypting_stream(sink: BinaryIO, key_data: bytes, *, armor: bool = False, filename: str = "") -> EncryptingWriter:
    entity = _single_entity(key_data)
    recipient = entity.encryption_key()
    return EncryptingWriter(sink, recipient, armored=armor, filename=filename)


def unlock_private_key(key_data: bytes, passphrase: Optional[bytes]) -> List[KeyEntity]:
    entity = _single_entity(key_data)
    if not entity.has_secret:
        raise KeyFormatError(f"key {entity.fingerprint} has no private key material")
    entity.unlock(passphrase)
    return [entity]


def open_decrypting_stream(source: BinaryIO, key_data: bytes, passphrase: Optional[bytes] = None) -> DecryptingReader:
    return DecryptingReader(source, unlock_private_key(key_data, passphrase))
