from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from dmpacker.catalog import fetch_catalog
from dmpacker.config import Config, is_dir
from dmpacker.constants import DEFAULT_KEYSERVER, DEFAULT_SERVICE
from dmpacker.encryption import resolve_passphrase, resolve_public_key, load_key_file
from dmpacker.errors import FileAlreadyExists, PackerError
from dmpacker.keys import export_public_key, export_secret_key, generate_key
from dmpacker.metadata import create_or_verify_metadata_file
from dmpacker.package import PackageReader, PackageWriter

logger = logging.getLogger("dmpacker")


def _collect_input(label: str, choices: List[str]) -> str:
    """Prompt on the terminal until an answer (one of ``choices``, if any) is given.

    Prompts go to stderr so a package streamed to stdout stays clean.
    Returns "" on end of input.
    """
    allowed = {c.lower(): c for c in choices}
    while True:
        if choices:
            print(f"Choices for {label}: {', '.join(choices)}", file=sys.stderr)
        print(f"Enter {label}: ", end="", file=sys.stderr, flush=True)
        line = sys.stdin.readline()
        if not line:
            return ""
        answer = line.strip()
        if not answer:
            continue
        if not choices:
            return answer
        if answer.lower() in allowed:
            return allowed[answer.lower()]
        print(f"'{answer}' is not a valid choice", file=sys.stderr)


def _write_exclusive(path: str, data: bytes, mode: int = 0o644) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), mode)
    except FileExistsError as exc:
        raise FileAlreadyExists(path) from exc
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)


def cmd_pack(cfg: Config, *, verify_only: bool = False, armor: bool = False, interactive: bool = True) -> List[str]:
    """Create or verify the manifest of ``cfg.data_dir_path``, then pack the directory.

    Returns the packed entry names (empty when only verifying).
    """
    fmt = cfg.verify()
    # Resolve the key before touching the manifest, so a bad key fails fast
    key_data = resolve_public_key(key_path=cfg.key_path, key_email=cfg.key_email, keyserver=cfg.keyserver) if fmt.encrypted else None
    metadata = create_or_verify_metadata_file(cfg, verify_only, prompt=_collect_input if interactive else None)
    if verify_only:
        print(f"Metadata OK: {len(metadata.records)} file(s) verified", file=sys.stderr)
        return []
    entries = PackageWriter(cfg, key_data=key_data, armor=armor).pack(cfg.data_dir_path)
    where = cfg.package_path or "<stdout>"
    print(f"Packed {len(entries)} file(s) into {where}", file=sys.stderr)
    return entries


def cmd_unpack(cfg: Config) -> List[str]:
    """Unpack a package (or standard input) into ``cfg.data_dir_path`` and verify its manifest."""
    fmt = cfg.verify()
    cfg.require_private_key(fmt)
    key_data = passphrase = None
    if fmt.encrypted:
        key_data = load_key_file(cfg.key_path)
        passphrase = resolve_passphrase(cfg.key_pass_path)
    # Fetch the catalog first so an unreachable service fails before extraction
    catalog = fetch_catalog(cfg.service, cfg.catalog_path)
    entries = PackageReader(cfg, key_data=key_data, passphrase=passphrase).unpack(cfg.data_dir_path)
    metadata = create_or_verify_metadata_file(cfg, True, catalog=catalog)
    print(
        f"Unpacked {len(entries)} file(s) into {cfg.data_dir_path}; metadata OK ({len(metadata.records)} record(s))",
        file=sys.stderr,
    )
    return entries


def cmd_keygen(name: str, email: str, private_out: str, public_out: str, *, passphrase_file: str = "", bits: int = 2048) -> str:
    """Generate an RSA key pair for packages; returns the primary fingerprint."""
    for path in (private_out, public_out):
        if os.path.exists(path):
            raise FileAlreadyExists(path)
    passphrase = resolve_passphrase(passphrase_file)
    if passphrase is None:
        logger.warning("no passphrase given; the private key will be stored unprotected")
    entity = generate_key(name, email, passphrase, bits=bits)
    _write_exclusive(private_out, export_secret_key(entity), 0o600)
    _write_exclusive(public_out, export_public_key(entity))
    print(entity.fingerprint)
    return entity.fingerprint


def _add_catalog_args(ap: argparse.ArgumentParser) -> None:
    group = ap.add_mutually_exclusive_group()
    group.add_argument("--service", default=DEFAULT_SERVICE, help="URL of the data models service (schema catalog)")
    group.add_argument("--catalog", default="", help="JSON file with the data models list, used instead of the service")


def _add_manifest_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("--site", default="", help="Organization that generated the data")
    ap.add_argument("--schema", default="", help="Schema (data model) name")
    ap.add_argument("--schema-version", default="", help="Schema version; defaults to the latest")
    ap.add_argument("--etl", default="", help="URL of the ETL code used to generate the data")
    ap.add_argument("--data-version", default="", help="Version of the data in the package")


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="dmpacker",
        description="Package data model CSV directories with a verified manifest",
        epilog=(
            "Packages named *.gpg are OpenPGP-encrypted. The private key passphrase is read "
            "from PACKER_KEYPASS or, failing that, --key-pass-path."
        ),
    )
    ap.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    sub = ap.add_subparsers(dest="cmd", required=True)

    # pack
    ap_pack = sub.add_parser("pack", help="Create or verify metadata.csv, then pack a data directory")
    ap_pack.add_argument("data_dir", help="Directory of CSV data files")
    ap_pack.add_argument("--out", default="", help="Package path; standard output when omitted")
    ap_pack.add_argument("--comp", default="", help="Compression: tar.gz (default) or zip")
    key = ap_pack.add_mutually_exclusive_group()
    key.add_argument("--key-path", default="", help="Public key file for encryption")
    key.add_argument("--key-email", default="", help="Look up the public key on a keyserver")
    ap_pack.add_argument("--keyserver", default=DEFAULT_KEYSERVER, help="HKP keyserver for --key-email")
    ap_pack.add_argument("--armor", action="store_true", help="ASCII-armor the encrypted package")
    ap_pack.add_argument("--verify-only", action="store_true", help="Only verify an existing metadata.csv")
    ap_pack.add_argument("--no-input", action="store_true", help="Fail instead of prompting for missing values")
    _add_manifest_args(ap_pack)
    _add_catalog_args(ap_pack)

    # unpack
    ap_unpack = sub.add_parser("unpack", help="Unpack a package and verify its metadata.csv")
    ap_unpack.add_argument("package", nargs="?", default="", help="Package path; standard input when omitted")
    ap_unpack.add_argument("--out", default=".", help="Output directory")
    ap_unpack.add_argument("--comp", default="", help="Compression of standard input: tar.gz (default), tar.bz2 or zip")
    ap_unpack.add_argument("--key-path", default="", help="Private key file for decryption")
    ap_unpack.add_argument("--key-pass-path", default="", help="File holding the private key passphrase")
    _add_manifest_args(ap_unpack)
    _add_catalog_args(ap_unpack)

    # keygen
    ap_keygen = sub.add_parser("keygen", help="Generate an RSA key pair for encrypted packages")
    ap_keygen.add_argument("--name", default="", help="User ID name")
    ap_keygen.add_argument("--email", required=True, help="User ID email")
    ap_keygen.add_argument("--private-out", required=True, help="Path for the armored private key")
    ap_keygen.add_argument("--public-out", required=True, help="Path for the armored public key")
    ap_keygen.add_argument("--passphrase-file", default="", help="File holding the passphrase protecting the private key")
    ap_keygen.add_argument("--bits", type=int, default=2048, help="RSA modulus size")

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="dmpacker: %(message)s",
        stream=sys.stderr,
    )
    try:
        if args.cmd == "pack":
            if not is_dir(args.data_dir):
                raise NotADirectoryError(f"not a directory: {args.data_dir}")
            cfg = Config(
                package_path=args.out,
                data_dir_path=args.data_dir,
                compression=args.comp,
                key_path=args.key_path,
                key_email=args.key_email,
                keyserver=args.keyserver,
                schema=args.schema,
                schema_version=args.schema_version,
                site=args.site,
                etl=args.etl,
                data_version=args.data_version,
                service=args.service,
                catalog_path=args.catalog,
            )
            cmd_pack(cfg, verify_only=args.verify_only, armor=args.armor, interactive=not args.no_input)
        elif args.cmd == "unpack":
            if args.package and is_dir(args.package):
                raise IsADirectoryError(f"package is a directory: {args.package}")
            cfg = Config(
                package_path=args.package,
                data_dir_path=args.out,
                compression=args.comp,
                key_path=args.key_path,
                key_pass_path=args.key_pass_path,
                schema=args.schema,
                schema_version=args.schema_version,
                site=args.site,
                etl=args.etl,
                data_version=args.data_version,
                service=args.service,
                catalog_path=args.catalog,
            )
            cmd_unpack(cfg)
        elif args.cmd == "keygen":
            cmd_keygen(
                args.name,
                args.email,
                args.private_out,
                args.public_out,
                passphrase_file=args.passphrase_file,
                bits=args.bits,
            )
        else:
            raise RuntimeError("Unknown command")
    except (PackerError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
