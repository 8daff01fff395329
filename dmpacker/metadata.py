from __future__ import annotations

"""Manifest (``metadata.csv``) generation and verification.

Verification is two-phase. Every record is first checked structurally
against the declared settings and the schema catalog, and all problems are
reported together. Only a structurally sound manifest has its checksums
verified, stopping at the first file that does not match.
"""

import csv
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TextIO

from .catalog import SchemaCatalog, fetch_catalog
from .config import Config
from .constants import (
    CANONICAL_HEADER,
    CASE_SENSITIVE_FIELDS,
    DATA_FILE_EXT,
    METADATA_FILENAME,
    REQUIRED_FIELDS,
)
from .errors import (
    ChecksumMismatch,
    DataFileMissing,
    FieldMismatch,
    MalformedManifest,
    MetadataInvalid,
    MetadataNotFound,
    MissingField,
    MissingHeaderField,
    RecordError,
    UnexpectedFileType,
    UnexpectedHeaderField,
    UnknownSchema,
    UnknownTable,
)
from .hashutil import sha256_file
from .pathutil import rel_entry_path, target_path, walk_sorted

logger = logging.getLogger(__name__)

# prompt(label, choices) -> answer; choices is empty for free-form values
Prompt = Callable[[str, List[str]], str]


@dataclass
class Record:
    line: int
    values: Dict[str, str]

    def get(self, field: str) -> str:
        return self.values.get(field, "")


def _normalize(field: str, value: str) -> str:
    return value if field in CASE_SENSITIVE_FIELDS else value.lower()


class Metadata:
    """Manifest engine for one data directory.

    Declared values (site, schema, versions, etl) constrain verification and
    fill generated records. A declared schema must exist in the catalog; its
    version defaults to the latest one.
    """

    def __init__(
        self,
        data_dir: str,
        catalog: SchemaCatalog,
        *,
        site: str = "",
        schema: str = "",
        schema_version: str = "",
        data_version: str = "",
        etl: str = "",
        prompt: Optional[Prompt] = None,
    ):
        self.data_dir = data_dir
        self.catalog = catalog
        self.site = site
        self.schema = schema.lower()
        self.schema_version = schema_version.lower()
        self.data_version = data_version.lower()
        self.etl = etl
        self.prompt = prompt
        self.header: List[str] = []
        self.records: List[Record] = []
        if self.schema:
            if not catalog.has_schema(self.schema):
                raise UnknownSchema(0, self.schema, self.schema_version)
            if not self.schema_version:
                self.schema_version = catalog.latest(self.schema) or ""
            elif not catalog.has_version(self.schema, self.schema_version):
                raise UnknownSchema(0, self.schema, self.schema_version)

    def _ask(self, label: str, choices: List[str]) -> str:
        if self.prompt is None:
            raise MissingField(0, label)
        answer = self.prompt(label, list(choices)).strip()
        if not answer:
            raise MissingField(0, label)
        return answer

    # -- generation -------------------------------------------------------

    def make(self, stream: TextIO) -> List[Record]:
        """Write a manifest for every data file in the directory to ``stream``."""
        site = self.site or self._ask("site name", [])
        schema = self.schema or self._ask("schema name", self.catalog.names()).lower()
        version = self.schema_version
        if not version:
            version = self._ask("schema version", self.catalog.versions(schema)).lower()
        if not self.catalog.has_version(schema, version):
            raise UnknownSchema(0, schema, version)
        etl = self.etl or self._ask("etl code URL", [])
        self.site, self.schema, self.schema_version, self.etl = site, schema, version, etl

        tables = self.catalog.tables(schema, version)
        writer = csv.writer(stream, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CANONICAL_HEADER)
        self.header = list(CANONICAL_HEADER)
        self.records = []
        line = 1
        for path in walk_sorted(self.data_dir):
            rel = rel_entry_path(self.data_dir, path)
            if rel == METADATA_FILENAME:
                continue
            if not path.lower().endswith(DATA_FILE_EXT):
                raise UnexpectedFileType(path)
            stem = os.path.basename(path)[: -len(DATA_FILE_EXT)].lower()
            table = stem if stem in tables else self._ask(f"table name for '{rel}'", tables).lower()
            logger.info("calculating '%s' checksum", os.path.basename(path))
            row = [site, rel, sha256_file(path), schema, version, table, etl, self.data_version]
            writer.writerow(row)
            line += 1
            self.records.append(Record(line, {f: _normalize(f, v) for f, v in zip(CANONICAL_HEADER, row)}))
        return list(self.records)

    # -- verification -----------------------------------------------------

    def read(self, stream: TextIO) -> List[Record]:
        """Strictly parse a manifest; raises before any data file is opened."""
        reader = csv.reader(stream, strict=True)
        try:
            raw_header = next(reader)
        except StopIteration:
            raise MalformedManifest("metadata file is empty") from None
        except csv.Error as exc:
            raise MalformedManifest(f"line {reader.line_num}: {exc}") from exc

        header = [h.strip().lower() for h in raw_header]
        seen = set()
        for field in header:
            if field not in REQUIRED_FIELDS:
                raise UnexpectedHeaderField(f"unexpected header value: {field}")
            if field in seen:
                raise UnexpectedHeaderField(f"duplicate header value: {field}")
            seen.add(field)
        for field in CANONICAL_HEADER:
            if REQUIRED_FIELDS[field] and field not in seen:
                raise MissingHeaderField(f"missing required header value: {field}")

        records: List[Record] = []
        try:
            for row in reader:
                if not row:
                    continue
                if len(row) != len(header):
                    raise MalformedManifest(
                        f"line {reader.line_num}: expected {len(header)} fields, found {len(row)}"
                    )
                values = {f: _normalize(f, v) for f, v in zip(header, row)}
                records.append(Record(reader.line_num, values))
        except csv.Error as exc:
            raise MalformedManifest(f"line {reader.line_num}: {exc}") from exc
        self.header = header
        self.records = records
        return records

    def _record_errors(self, rec: Record) -> List[RecordError]:
        missing = [MissingField(rec.line, f) for f in CANONICAL_HEADER if REQUIRED_FIELDS[f] and not rec.get(f)]
        if missing:
            return list(missing)

        errors: List[RecordError] = []
        schema = rec.get("schema-name")
        version = rec.get("schema-version") or self.catalog.latest(schema) or ""
        if self.site and rec.get("organization") != self.site:
            errors.append(FieldMismatch(rec.line, "organization", rec.get("organization"), self.site))
        if self.schema and schema != self.schema:
            errors.append(FieldMismatch(rec.line, "schema-name", schema, self.schema))
        if self.schema_version and version != self.schema_version:
            errors.append(FieldMismatch(rec.line, "schema-version", version, self.schema_version))
        data_version = rec.get("data-version")
        if self.data_version and data_version and data_version != self.data_version:
            errors.append(FieldMismatch(rec.line, "data-version", data_version, self.data_version))

        if not version or not self.catalog.has_version(schema, version):
            errors.append(UnknownSchema(rec.line, schema, rec.get("schema-version")))
            return errors
        table = rec.get("table")
        if table not in self.catalog.tables(schema, version):
            errors.append(UnknownTable(rec.line, table, schema, version))
        return errors

    def validate(self) -> None:
        errors: List[RecordError] = []
        for rec in self.records:
            errors.extend(self._record_errors(rec))
        if errors:
            raise MetadataInvalid(errors)

    def verify_checksums(self) -> None:
        for rec in self.records:
            name = rec.get("filename")
            path = target_path(self.data_dir, name)
            logger.info("validating '%s' checksum", os.path.basename(path))
            try:
                actual = sha256_file(path)
            except FileNotFoundError:
                raise DataFileMissing(rec.line, name) from None
            if actual != rec.get("checksum"):
                raise ChecksumMismatch(rec.line, name, rec.get("checksum"), actual)

    def check(self, stream: TextIO) -> List[Record]:
        """Verify a manifest against the catalog and the files it lists."""
        self.read(stream)
        self.validate()
        self.verify_checksums()
        return list(self.records)


def create_or_verify_metadata_file(
    config: Config,
    verify_only: bool = False,
    *,
    catalog: Optional[SchemaCatalog] = None,
    prompt: Optional[Prompt] = None,
) -> Metadata:
    """Create ``metadata.csv`` in the data directory, or verify the existing one."""
    if catalog is None:
        catalog = fetch_catalog(config.service, config.catalog_path)
    metadata = Metadata(
        config.data_dir_path,
        catalog,
        site=config.site,
        schema=config.schema,
        schema_version=config.schema_version,
        data_version=config.data_version,
        etl=config.etl,
        prompt=prompt,
    )
    path = os.path.join(config.data_dir_path, METADATA_FILENAME)

    if verify_only:
        try:
            fh = open(path, "r", newline="", encoding="utf-8")
        except FileNotFoundError:
            raise MetadataNotFound(f"metadata file not found: {path}") from None
        with fh:
            metadata.check(fh)
        return metadata

    try:
        fh = open(path, "x", newline="", encoding="utf-8")
    except FileExistsError:
        with open(path, "r", newline="", encoding="utf-8") as existing:
            metadata.check(existing)
        return metadata
    logger.info("creating '%s'", path)
    try:
        with fh:
            metadata.make(fh)
    except BaseException:
        os.remove(path)
        raise
    return metadata
