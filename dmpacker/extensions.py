from __future__ import annotations

"""Package filename resolution.

The suffix chain of a package filename declares how the package is built:
``data.tar.gz.gpg`` is a tar archive, gzip-compressed, then OpenPGP-encrypted.
Everything here is a pure function of its arguments so it can run before any
file is opened.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from .constants import (
    COMP_TAR_BZ2,
    COMP_TAR_GZ,
    COMP_ZIP,
    EXT_BZ2,
    EXT_GPG,
    EXT_GZ,
    EXT_TAR,
    EXT_ZIP,
    SUFFIX_CLASSES,
)
from .errors import (
    CompressionConflict,
    ExtensionConflict,
    MisplacedExtension,
    MissingKey,
    MissingTarContainer,
    NoCompressionExtension,
    UnexpectedKey,
    UnknownExtension,
)


@dataclass(frozen=True)
class PackageFormat:
    compression: str
    encrypted: bool = False


def classify_suffixes(filename: str) -> List[str]:
    """Return the suffix classes of ``filename``, outermost first.

    The rightmost suffix must be recognised. Scanning stops at the first
    unrecognised suffix further left, which is taken as part of the stem.
    """
    base = os.path.basename(filename).lower()
    parts = base.split(".")
    if len(parts) < 2 or not parts[-1]:
        raise UnknownExtension(f"package name has no extension: '{filename}'")
    classes: List[str] = []
    for suffix in reversed(parts[1:]):
        cls = SUFFIX_CLASSES.get(suffix)
        if cls is None:
            if not classes:
                raise UnknownExtension(f"unknown extension '.{suffix}' on '{filename}'")
            break
        classes.append(cls)
    return classes


def _compression_from_classes(classes: List[str], label: str) -> str:
    present = set(classes)
    methods = [c for c in (EXT_GZ, EXT_BZ2, EXT_ZIP) if c in present]
    if len(methods) > 1:
        raise ExtensionConflict(f"conflicting compression extensions ({', '.join(methods)}) in '{label}'")
    if EXT_ZIP in present and EXT_TAR in present:
        raise ExtensionConflict(f"'zip' cannot be combined with 'tar' in '{label}'")
    if (EXT_GZ in present or EXT_BZ2 in present) and EXT_TAR not in present:
        raise MissingTarContainer(f"'{methods[0]}' compression requires a 'tar' container in '{label}'")
    if EXT_TAR in present and EXT_GZ in present:
        return COMP_TAR_GZ
    if EXT_TAR in present and EXT_BZ2 in present:
        return COMP_TAR_BZ2
    if EXT_ZIP in present:
        return COMP_ZIP
    raise NoCompressionExtension(f"no compression extension in '{label}'")


def normalize_compression(value: str) -> str:
    """Map a compression override such as '.tar.gzip' or 'zip' to its canonical name."""
    text = value.strip().lower().lstrip(".")
    if not text:
        raise NoCompressionExtension("empty compression method")
    classes: List[str] = []
    for suffix in reversed(text.split(".")):
        cls = SUFFIX_CLASSES.get(suffix)
        if cls is None or cls == EXT_GPG:
            raise UnknownExtension(f"unknown compression method '{value}'")
        classes.append(cls)
    return _compression_from_classes(classes, value)


def resolve_package_format(
    filename: str,
    *,
    compression: Optional[str] = None,
    has_key: bool = False,
) -> PackageFormat:
    """Infer the compression method and whether encryption is expected.

    Args:
        filename: Package path or name; only the basename is inspected.
        compression: Compression method declared by configuration, if any.
        has_key: True when key material (path or identity) was supplied.

    Raises:
        FormatError subclasses for unknown, misplaced or conflicting
        suffixes; CompressionConflict, MissingKey or UnexpectedKey when the
        name disagrees with the declared configuration.
    """
    classes = classify_suffixes(filename)
    encrypted = False
    if EXT_GPG in classes:
        if classes[0] != EXT_GPG or classes.count(EXT_GPG) > 1:
            raise MisplacedExtension(f"'gpg' must be the last extension of '{filename}'")
        encrypted = True
        classes = classes[1:]
    inferred = _compression_from_classes(classes, filename)
    if compression:
        declared = normalize_compression(compression)
        if declared != inferred:
            raise CompressionConflict(
                f"compression '{declared}' conflicts with '{inferred}' implied by '{filename}'"
            )
    if encrypted and not has_key:
        raise MissingKey(f"no key path or email given for package with 'gpg' extension: '{filename}'")
    if has_key and not encrypted:
        raise UnexpectedKey(f"key path or email given but '{filename}' has no 'gpg' extension")
    return PackageFormat(compression=inferred, encrypted=encrypted)
