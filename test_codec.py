from __future__ import annotations

import io
import os
import tarfile
import unittest
from unittest import mock

from dmpacker.codec import TarGzWriter, ZipWriter, open_codec_reader, open_codec_writer
from dmpacker.constants import COMP_TAR_BZ2, COMP_TAR_GZ, COMP_ZIP
from dmpacker.errors import EntryOverflow, MalformedArchive, MalformedCiphertext, ShortWrite, UnsupportedCompression


ENTRIES = [
    ("datafile1.csv", 0o644, b"A test message"),
    ("nested/big.csv", 0o600, os.urandom(200_000)),
    ("empty.csv", 0o644, b""),
]


def _write_all(compression: str) -> bytes:
    sink = io.BytesIO()
    with open_codec_writer(compression, sink) as w:
        for name, mode, data in ENTRIES:
            w.write_entry_header(name, mode, len(data))
            # Feed in uneven chunks to exercise streaming
            for i in range(0, len(data), 7777):
                w.write(data[i : i + 7777])
    return sink.getvalue()


def _read_all(compression: str, payload: bytes):
    out = []
    with open_codec_reader(compression, io.BytesIO(payload)) as r:
        while True:
            header = r.next()
            if header is None:
                break
            chunks = []
            while True:
                buf = r.read(4096)
                if not buf:
                    break
                chunks.append(buf)
            out.append((header.name, header.mode, header.size, b"".join(chunks)))
    return out


class _NonSeekable(io.RawIOBase):
    def __init__(self, data: bytes):
        self._inner = io.BytesIO(data)

    def readable(self):
        return True

    def readinto(self, b):
        chunk = self._inner.read(len(b))
        b[: len(chunk)] = chunk
        return len(chunk)


class _FailingSource(_NonSeekable):
    """Yields its data, then fails the way a tampered decrypting stream does."""

    def readinto(self, b):
        n = super().readinto(b)
        if not n:
            raise MalformedCiphertext("modification detected")
        return n


class CodecRoundTripTests(unittest.TestCase):
    def test_tar_gz_roundtrip(self):
        got = _read_all(COMP_TAR_GZ, _write_all(COMP_TAR_GZ))
        self.assertEqual(got, [(n, m, len(d), d) for n, m, d in ENTRIES])

    def test_zip_roundtrip(self):
        got = _read_all(COMP_ZIP, _write_all(COMP_ZIP))
        self.assertEqual(got, [(n, m, len(d), d) for n, m, d in ENTRIES])

    def test_tar_gz_output_is_a_regular_tarball(self):
        payload = _write_all(COMP_TAR_GZ)
        with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
            self.assertEqual(tar.getnames(), [n for n, _, _ in ENTRIES])

    def test_zip_reader_spools_non_seekable_sources(self):
        payload = _write_all(COMP_ZIP)
        with open_codec_reader(COMP_ZIP, _NonSeekable(payload)) as r:
            header = r.next()
            self.assertEqual(header.name, "datafile1.csv")
            self.assertEqual(r.read(), b"A test message")

    def test_tar_bz2_is_read_only(self):
        with self.assertRaises(UnsupportedCompression):
            open_codec_writer(COMP_TAR_BZ2, io.BytesIO())
        raw = io.BytesIO()
        with tarfile.open(fileobj=raw, mode="w:bz2") as tar:
            info = tarfile.TarInfo("datafile2.csv")
            info.size = len(b"A test message")
            info.mode = 0o640
            tar.addfile(info, io.BytesIO(b"A test message"))
        got = _read_all(COMP_TAR_BZ2, raw.getvalue())
        self.assertEqual(got, [("datafile2.csv", 0o640, 14, b"A test message")])


class CodecErrorTests(unittest.TestCase):
    def test_short_entry_is_reported(self):
        w = TarGzWriter(io.BytesIO())
        w.write_entry_header("a.csv", 0o644, 10)
        w.write(b"12345")
        with self.assertRaises(ShortWrite):
            w.close()

        z = ZipWriter(io.BytesIO())
        z.write_entry_header("a.csv", 0o644, 10)
        z.write(b"12345")
        with self.assertRaises(ShortWrite):
            z.close()

    def test_overflowing_entry_is_rejected(self):
        for compression in (COMP_TAR_GZ, COMP_ZIP):
            with self.subTest(compression=compression):
                w = open_codec_writer(compression, io.BytesIO())
                w.write_entry_header("a.csv", 0o644, 3)
                with self.assertRaises(EntryOverflow):
                    w.write(b"1234")
                w.abort()

    def test_abort_writes_no_trailer(self):
        sink = io.BytesIO()
        w = TarGzWriter(sink)
        w.write_entry_header("a.csv", 0o644, 5)
        w.write(b"12345")
        w.abort()
        # At most the gzip member header reached the sink
        self.assertLessEqual(len(sink.getvalue()), 10)

        sink = io.BytesIO()
        z = ZipWriter(sink)
        z.write_entry_header("a.csv", 0o644, 5)
        z.write(b"12345")
        z.abort()
        self.assertNotIn(b"PK\x05\x06", sink.getvalue())

    def test_garbage_payloads_are_malformed(self):
        garbage = b"this is not an archive " * 50
        for compression in (COMP_TAR_GZ, COMP_TAR_BZ2, COMP_ZIP):
            with self.subTest(compression=compression):
                with self.assertRaises(MalformedArchive):
                    _read_all(compression, garbage)

    def test_truncated_tar_gz_is_malformed(self):
        payload = _write_all(COMP_TAR_GZ)
        with self.assertRaises(MalformedArchive):
            _read_all(COMP_TAR_GZ, payload[: len(payload) // 2])

    def test_failed_spool_is_released(self):
        payload = _write_all(COMP_ZIP)
        spool = io.BytesIO()
        with mock.patch("dmpacker.codec.tempfile.TemporaryFile", return_value=spool):
            with self.assertRaises(MalformedCiphertext):
                open_codec_reader(COMP_ZIP, _FailingSource(payload[:50_000]))
        self.assertTrue(spool.closed)


if __name__ == "__main__":
    unittest.main()
