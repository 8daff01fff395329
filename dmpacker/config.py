from __future__ import annotations

import os
import stat
from dataclasses import dataclass

from .constants import DEFAULT_COMPRESSION, DEFAULT_KEYSERVER, DEFAULT_SERVICE
from .errors import ConfigError
from .extensions import PackageFormat, normalize_compression, resolve_package_format


@dataclass
class Config:
    """Settings for one pack, unpack or verify run.

    ``package_path`` may be empty, in which case the package is streamed over
    standard output (pack) or standard input (unpack). For packing, the public
    key comes from ``key_path`` or is looked up on ``keyserver`` by
    ``key_email``; ``key_path`` wins when both are given. For unpacking,
    ``key_path`` must hold the private key. A protected private key is
    unlocked with the passphrase from the ``PACKER_KEYPASS`` environment
    variable or, failing that, the file at ``key_pass_path``.
    """

    package_path: str = ""
    data_dir_path: str = ""
    compression: str = ""
    key_path: str = ""
    key_email: str = ""
    key_pass_path: str = ""
    keyserver: str = DEFAULT_KEYSERVER
    schema: str = ""
    schema_version: str = ""
    site: str = ""
    etl: str = ""
    data_version: str = ""
    service: str = DEFAULT_SERVICE
    catalog_path: str = ""

    @property
    def has_key(self) -> bool:
        return bool(self.key_path or self.key_email)

    def verify(self) -> PackageFormat:
        """Validate the configuration and resolve the package format.

        Runs before any file is opened so that conflicting settings fail fast.
        """
        if self.package_path:
            return resolve_package_format(
                self.package_path,
                compression=self.compression or None,
                has_key=self.has_key,
            )
        compression = normalize_compression(self.compression) if self.compression else DEFAULT_COMPRESSION
        return PackageFormat(compression=compression, encrypted=self.has_key)

    def require_private_key(self, fmt: PackageFormat) -> None:
        if fmt.encrypted and not self.key_path:
            raise ConfigError("unpacking an encrypted package requires a private key path")


def is_dir(path: str) -> bool:
    """Return True when ``path`` is a directory; raises OSError if it does not exist."""
    return stat.S_ISDIR(os.stat(path).st_mode)
