import os


# Compression methods (canonical names)
COMP_TAR_GZ = "tar.gz"
COMP_TAR_BZ2 = "tar.bz2"
COMP_ZIP = "zip"

DEFAULT_COMPRESSION = COMP_TAR_GZ

# Suffix classes used by the extension resolver
EXT_GPG = "gpg"
EXT_TAR = "tar"
EXT_GZ = "gz"
EXT_BZ2 = "bz2"
EXT_ZIP = "zip"

SUFFIX_CLASSES = {
    "gpg": EXT_GPG,
    "tar": EXT_TAR,
    "gz": EXT_GZ,
    "gzip": EXT_GZ,
    "bz2": EXT_BZ2,
    "bzip2": EXT_BZ2,
    "zip": EXT_ZIP,
}

# Streaming copies never hold more than this many bytes of a data file
COPY_CHUNK_SIZE = 32 * 1024

DATA_FILE_EXT = ".csv"
METADATA_FILENAME = "metadata.csv"

# Passphrase for the private key may be exported here (preferred over a file)
KEYPASS_ENV = "PACKER_KEYPASS"

DEFAULT_SERVICE = "http://data-models.origins.link"
DEFAULT_KEYSERVER = "https://keys.openpgp.org"
HTTP_TIMEOUT = 30

# Manifest fields, in canonical order, and whether each one is required
CANONICAL_HEADER = (
    "organization",
    "filename",
    "checksum",
    "schema-name",
    "schema-version",
    "table",
    "etl",
    "data-version",
)

REQUIRED_FIELDS = {
    "organization": True,
    "filename": True,
    "checksum": True,
    "schema-name": True,
    "schema-version": False,
    "table": True,
    "etl": True,
    "data-version": False,
}

# Values kept verbatim; every other manifest value is lowercased
CASE_SENSITIVE_FIELDS = ("organization", "filename", "etl")


def default_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask
