"""
dmpacker: packaging for data model CSV extracts.

A data directory of CSV files is described by a ``metadata.csv`` manifest
(organization, per-file SHA-256 checksums, schema name/version, table,
ETL provenance) and packed into a single archive:

- Compression: tar.gz or zip for writing; tar.bz2 is also read.
- Optional OpenPGP encryption (RSA recipient, AES-256, MDC) signalled by a
  trailing ``.gpg`` extension; the format is inferred from the filename.
- Unpacking re-verifies the manifest against the schema catalog of the data
  models service and against the extracted bytes.
"""

__version__ = "0.1"

__all__ = [
    "config",
    "extensions",
    "codec",
    "encryption",
    "package",
    "catalog",
    "metadata",
]

# Programmatic API: dmpacker.package (PackageWriter/PackageReader),
# dmpacker.metadata (create_or_verify_metadata_file) and the cmd_* functions
# in dmpacker.cli, which take normal parameters.
