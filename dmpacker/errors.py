from __future__ import annotations

from typing import List


class PackerError(Exception):
    """Base class for dmpacker-specific errors."""


# Top-level taxonomy
class ConfigError(PackerError):
    pass


class FormatError(PackerError):
    pass


class CryptoError(PackerError):
    pass


class IntegrityError(PackerError):
    pass


class PackageIOError(PackerError):
    pass


class ServiceError(PackerError):
    pass


# Extension resolution
class UnknownExtension(FormatError):
    pass


class ExtensionConflict(FormatError):
    pass


class MissingTarContainer(FormatError):
    pass


class NoCompressionExtension(FormatError):
    pass


class MisplacedExtension(FormatError):
    pass


class CompressionConflict(ConfigError):
    pass


class UnsupportedCompression(ConfigError):
    pass


class MissingKey(ConfigError, CryptoError):
    pass


class UnexpectedKey(ConfigError):
    pass


# Archive framing
class MalformedArchive(FormatError):
    pass


class EntryOverflow(FormatError):
    pass


class UnexpectedFileType(FormatError):
    def __init__(self, path: str):
        super().__init__(f"non-csv file found: {path}")
        self.path = path


class UnsafeEntryPath(FormatError):
    pass


# Filesystem
class ShortWrite(PackageIOError):
    def __init__(self, path: str, expected: int, actual: int):
        super().__init__(f"short write on '{path}': expected {expected} bytes, wrote {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class FileAlreadyExists(PackageIOError):
    def __init__(self, path: str):
        super().__init__(f"refusing to overwrite existing file: {path}")
        self.path = path


# Cryptography
class KeyFormatError(CryptoError):
    pass


class UnsupportedKey(CryptoError):
    pass


class KeyUnlockFailure(CryptoError):
    pass


class MalformedCiphertext(CryptoError):
    pass


class NoMatchingKey(CryptoError):
    pass


# Manifest
class MetadataNotFound(IntegrityError):
    pass


class MalformedManifest(IntegrityError):
    pass


class UnexpectedHeaderField(MalformedManifest):
    pass


class MissingHeaderField(MalformedManifest):
    pass


class RecordError(IntegrityError):
    """A problem attributed to one manifest record (line 0: not tied to a record)."""

    def __init__(self, line: int, message: str):
        super().__init__(f"line {line}: {message}" if line else message)
        self.line = line


class MissingField(RecordError):
    def __init__(self, line: int, field: str):
        super().__init__(line, f"missing required value '{field}'")
        self.field = field


class FieldMismatch(RecordError):
    def __init__(self, line: int, field: str, actual: str, expected: str):
        super().__init__(line, f"{field} '{actual}' does not match expected {field} '{expected}'")
        self.field = field
        self.actual = actual
        self.expected = expected


class UnknownSchema(RecordError):
    def __init__(self, line: int, schema: str, version: str):
        super().__init__(line, f"schema '{schema}' version '{version}' not found in data models service")
        self.schema = schema
        self.version = version


class UnknownTable(RecordError):
    def __init__(self, line: int, table: str, schema: str = "", version: str = ""):
        super().__init__(line, f"table '{table}' not found for schema '{schema}' version '{version}'")
        self.table = table


class ChecksumMismatch(RecordError):
    def __init__(self, line: int, filename: str, expected: str, actual: str):
        super().__init__(line, f"file '{filename}' checksum does not match")
        self.filename = filename
        self.expected = expected
        self.actual = actual


class DataFileMissing(RecordError):
    def __init__(self, line: int, filename: str):
        super().__init__(line, f"file '{filename}' listed in manifest does not exist")
        self.filename = filename


class MetadataInvalid(IntegrityError):
    """All structural problems found in a manifest, in record order."""

    def __init__(self, errors: List[RecordError]):
        lines = "\n".join(f"  {e}" for e in errors)
        super().__init__(f"{len(errors)} problem(s) in metadata:\n{lines}")
        self.errors = list(errors)

    def lines(self) -> List[int]:
        return [e.line for e in self.errors]
