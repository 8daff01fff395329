from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from unittest import mock

import requests

from dmpacker.catalog import SchemaCatalog, SchemaServiceClient, fetch_catalog, load_catalog_file, version_key
from dmpacker.config import Config
from dmpacker.errors import (
    ChecksumMismatch,
    DataFileMissing,
    FieldMismatch,
    MalformedManifest,
    MetadataInvalid,
    MetadataNotFound,
    MissingField,
    MissingHeaderField,
    ServiceError,
    UnexpectedHeaderField,
    UnknownSchema,
    UnknownTable,
)
from dmpacker.hashutil import sha256_file
from dmpacker.metadata import Metadata, create_or_verify_metadata_file

MODELS = [
    {"name": "pedsnet", "version": "2.0.0", "tables": ["datafile1", "datafile2", "person"]},
    {"name": "pedsnet", "version": "2.1.0", "tables": [{"name": "datafile1"}, {"name": "datafile2"}]},
    {"name": "omop", "version": "5.0.0", "tables": ["person"]},
]

HEADER = '"organization","filename","checksum","schema-name","schema-version","table","etl","data-version"\n'


def _catalog() -> SchemaCatalog:
    return SchemaCatalog.from_models(MODELS)


class _Response:
    def __init__(self, status_code: int, doc=None):
        self.status_code = status_code
        self._doc = doc

    def json(self):
        if self._doc is None:
            raise ValueError("No JSON object could be decoded")
        return self._doc


class CatalogTests(unittest.TestCase):
    def test_lookup(self):
        cat = _catalog()
        self.assertEqual(cat.names(), ["omop", "pedsnet"])
        self.assertEqual(cat.versions("PEDSnet"), ["2.0.0", "2.1.0"])
        self.assertEqual(cat.latest("pedsnet"), "2.1.0")
        self.assertIsNone(cat.latest("i2b2"))
        self.assertTrue(cat.has_version("pedsnet", "2.0.0"))
        self.assertFalse(cat.has_version("omop", "2.0.0"))
        self.assertEqual(cat.tables("pedsnet", "2.1.0"), ["datafile1", "datafile2"])
        self.assertEqual(cat.as_listing()["omop"], {"versions": ["5.0.0"], "tables": {"5.0.0": ["person"]}})

    def test_versions_sort_naturally(self):
        cat = SchemaCatalog({"pcornet": {"3.9.0": [], "3.10.0": [], "3.1.0": []}})
        self.assertEqual(cat.versions("pcornet"), ["3.1.0", "3.9.0", "3.10.0"])
        self.assertEqual(cat.latest("pcornet"), "3.10.0")
        self.assertLess(version_key("1.0.0-rc1"), version_key("1.0.1"))

    def test_bad_model_document(self):
        with self.assertRaises(ServiceError):
            SchemaCatalog.from_models([{"version": "1.0.0"}])

    def test_catalog_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "models.json")
            with open(path, "w") as fh:
                json.dump({"models": MODELS}, fh)
            self.assertEqual(load_catalog_file(path).versions("pedsnet"), ["2.0.0", "2.1.0"])
            self.assertEqual(fetch_catalog("http://unused.invalid", path).names(), ["omop", "pedsnet"])
            with open(path, "w") as fh:
                fh.write("{not json")
            with self.assertRaises(ServiceError):
                load_catalog_file(path)
            with open(path, "w") as fh:
                json.dump({"models": "nope"}, fh)
            with self.assertRaises(ServiceError):
                load_catalog_file(path)

    def test_service_client(self):
        session = mock.Mock()
        session.get.side_effect = [_Response(200, {}), _Response(200, MODELS)]
        cat = fetch_catalog("http://models.example.org/", session=session)
        self.assertEqual(cat.latest("pedsnet"), "2.1.0")
        urls = [c.args[0] for c in session.get.call_args_list]
        self.assertEqual(urls, ["http://models.example.org/", "http://models.example.org/models"])

    def test_service_failures(self):
        session = mock.Mock()
        session.get.side_effect = requests.ConnectionError("refused")
        client = SchemaServiceClient("http://models.example.org", session=session)
        with self.assertLogs("dmpacker.catalog", level="WARNING"):
            self.assertFalse(client.ping())
        with self.assertRaises(ServiceError):
            fetch_catalog("http://models.example.org", session=session)

        session.get.side_effect = None
        session.get.return_value = _Response(500)
        with self.assertRaises(ServiceError):
            client.list_schemas()
        session.get.return_value = _Response(200, None)
        with self.assertRaises(ServiceError):
            client.list_schemas()


class MetadataTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        for name in ("datafile1.csv", "datafile2.csv"):
            with open(os.path.join(self.dir, name), "w") as fh:
                fh.write("A test message")
        self.manifest = os.path.join(self.dir, "metadata.csv")

    def tearDown(self):
        self._tmp.cleanup()

    def _config(self, **kw) -> Config:
        values = dict(
            data_dir_path=self.dir,
            site="ChOP",
            schema="pedsnet",
            schema_version="2.0.0",
            etl="https://github.com/example/etl",
            data_version="1.0.0",
        )
        values.update(kw)
        return Config(**values)

    def _write_manifest(self, text: str) -> None:
        with open(self.manifest, "w", newline="") as fh:
            fh.write(text)

    def _row(self, filename: str, checksum: str = "", table: str = "datafile1", site: str = "ChOP") -> str:
        checksum = checksum or sha256_file(os.path.join(self.dir, filename))
        return f'"{site}","{filename}","{checksum}","pedsnet","2.0.0","{table}","https://github.com/example/etl","1.0.0"\n'

    def test_create_then_verify(self):
        md = create_or_verify_metadata_file(self._config(), catalog=_catalog())
        self.assertEqual([r.line for r in md.records], [2, 3])
        digest = sha256_file(os.path.join(self.dir, "datafile1.csv"))
        with open(self.manifest, newline="") as fh:
            lines = fh.read().splitlines(keepends=True)
        self.assertEqual(lines[0], HEADER)
        self.assertEqual(
            lines[1],
            f'"ChOP","datafile1.csv","{digest}","pedsnet","2.0.0","datafile1","https://github.com/example/etl","1.0.0"\n',
        )
        self.assertEqual(len(lines), 3)

        # A second run checks the existing manifest and leaves it alone
        with open(self.manifest, "rb") as fh:
            before = fh.read()
        create_or_verify_metadata_file(self._config(), catalog=_catalog())
        create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        with open(self.manifest, "rb") as fh:
            self.assertEqual(fh.read(), before)

    def test_latest_version_is_the_default(self):
        create_or_verify_metadata_file(self._config(schema_version=""), catalog=_catalog())
        with open(self.manifest, newline="") as fh:
            self.assertIn('"pedsnet","2.1.0","datafile1"', fh.read())

    def test_checksum_mismatch(self):
        create_or_verify_metadata_file(self._config(), catalog=_catalog())
        with open(os.path.join(self.dir, "datafile2.csv"), "a") as fh:
            fh.write("!")
        with self.assertRaises(ChecksumMismatch) as ctx:
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        self.assertEqual(ctx.exception.line, 3)
        self.assertEqual(ctx.exception.filename, "datafile2.csv")

    def test_missing_data_file(self):
        create_or_verify_metadata_file(self._config(), catalog=_catalog())
        os.remove(os.path.join(self.dir, "datafile1.csv"))
        with self.assertRaises(DataFileMissing) as ctx:
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        self.assertEqual(ctx.exception.line, 2)

    def test_verify_only_needs_a_manifest(self):
        with self.assertRaises(MetadataNotFound):
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        self.assertFalse(os.path.exists(self.manifest))

    def test_header_problems_fail_before_hashing(self):
        self._write_manifest('"organization","filename","schema-name","table","etl"\n"ChOP","datafile1.csv","pedsnet","datafile1","x"\n')
        with mock.patch("dmpacker.metadata.sha256_file") as hashed:
            with self.assertRaises(MissingHeaderField):
                create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        hashed.assert_not_called()

        self._write_manifest(HEADER.rstrip("\n") + ',"comments"\n')
        with self.assertRaises(UnexpectedHeaderField):
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())

        self._write_manifest('"filename","filename"\n')
        with self.assertRaises(UnexpectedHeaderField):
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())

    def test_ragged_rows_are_malformed(self):
        self._write_manifest(HEADER + '"ChOP","datafile1.csv"\n')
        with self.assertRaises(MalformedManifest):
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        self._write_manifest("")
        with self.assertRaises(MalformedManifest):
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())

    def test_structural_errors_are_collected(self):
        self._write_manifest(
            HEADER
            + self._row("datafile1.csv", table="visit_occurrence")
            + self._row("datafile2.csv", table="datafile2", site="Other Site")
        )
        with mock.patch("dmpacker.metadata.sha256_file") as hashed:
            with self.assertRaises(MetadataInvalid) as ctx:
                create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        hashed.assert_not_called()
        self.assertEqual(ctx.exception.lines(), [2, 3])
        first, second = ctx.exception.errors
        self.assertIsInstance(first, UnknownTable)
        self.assertIsInstance(second, FieldMismatch)
        self.assertEqual(second.field, "organization")

    def test_missing_values(self):
        self._write_manifest(HEADER + '"ChOP","datafile1.csv","","pedsnet","2.0.0","","",""\n')
        with self.assertRaises(MetadataInvalid) as ctx:
            create_or_verify_metadata_file(self._config(), True, catalog=_catalog())
        self.assertEqual(sorted(e.field for e in ctx.exception.errors), ["checksum", "etl", "table"])

    def test_unknown_schema(self):
        with self.assertRaises(UnknownSchema):
            create_or_verify_metadata_file(self._config(schema="i2b2"), catalog=_catalog())
        with self.assertRaises(UnknownSchema):
            create_or_verify_metadata_file(self._config(schema_version="9.9.9"), catalog=_catalog())
        self.assertFalse(os.path.exists(self.manifest))

    def test_values_are_prompted_for(self):
        with open(os.path.join(self.dir, "visits.csv"), "w") as fh:
            fh.write("id\n")
        asked = []

        def prompt(label, choices):
            asked.append((label, choices))
            answers = {
                "site name": "ChOP",
                "schema name": "PEDSnet",
                "schema version": "2.0.0",
                "etl code URL": "https://github.com/example/etl",
            }
            return answers.get(label, "person")

        md = create_or_verify_metadata_file(Config(data_dir_path=self.dir), catalog=_catalog(), prompt=prompt)
        self.assertEqual([label for label, _ in asked][:4], ["site name", "schema name", "schema version", "etl code URL"])
        self.assertEqual(asked[1][1], ["omop", "pedsnet"])
        self.assertEqual(asked[2][1], ["2.0.0", "2.1.0"])
        self.assertEqual(asked[4], ("table name for 'visits.csv'", ["datafile1", "datafile2", "person"]))
        self.assertEqual([r.get("table") for r in md.records], ["datafile1", "datafile2", "person"])

    def test_missing_value_without_prompt(self):
        with self.assertRaises(MissingField) as ctx:
            create_or_verify_metadata_file(self._config(site=""), catalog=_catalog())
        self.assertEqual(ctx.exception.field, "site name")
        self.assertFalse(os.path.exists(self.manifest))

    def test_make_to_stream(self):
        md = Metadata(self.dir, _catalog(), site="ChOP", schema="pedsnet", etl="x")
        out = io.StringIO()
        records = md.make(out)
        self.assertEqual(out.getvalue().splitlines()[0] + "\n", HEADER)
        self.assertEqual([r.get("schema-version") for r in records], ["2.1.0", "2.1.0"])


if __name__ == "__main__":
    unittest.main()
