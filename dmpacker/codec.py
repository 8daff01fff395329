from __future__ import annotations

import gzip
import shutil
import tarfile
import tempfile
import time
import zipfile
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Optional

from .constants import COMP_TAR_BZ2, COMP_TAR_GZ, COMP_ZIP, COPY_CHUNK_SIZE, default_file_mode
from .errors import (
    EntryOverflow,
    MalformedArchive,
    ShortWrite,
    UnsupportedCompression,
)


@dataclass
class EntryHeader:
    name: str
    mode: int
    size: int


class CodecWriter:
    """One write contract over every archive+compression backend.

    Call ``write_entry_header`` before each entry's bytes. ``close`` finalises
    the archive; ``abort`` releases it without writing trailers. The sink is
    never closed here, it belongs to the caller.
    """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def write_entry_header(self, name: str, mode: int, size: int, mtime: Optional[float] = None) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def abort(self) -> None:
        raise NotImplementedError


class _SinkProxy:
    """Forwards writes to the caller's sink until detached, then discards them.

    Lets an aborted backend run its normal close path without appending
    trailers to a package that is being thrown away. It exposes neither tell
    nor seek, so zipfile always writes streaming data descriptors.
    """

    def __init__(self, sink: BinaryIO):
        self._sink: Optional[BinaryIO] = sink

    def write(self, data) -> int:
        if self._sink is None:
            return len(data)
        return self._sink.write(data)

    def flush(self) -> None:
        if self._sink is not None and hasattr(self._sink, "flush"):
            self._sink.flush()

    def detach(self) -> None:
        self._sink = None


class TarGzWriter(CodecWriter):
    """Tar stream framed by hand from ``tarfile.TarInfo`` headers, gzip-compressed.

    ``tarfile.TarFile.addfile`` only accepts a whole file object per member;
    emitting the header and the padded body ourselves lets callers stream an
    entry in chunks.
    """

    def __init__(self, sink: BinaryIO, compresslevel: int = 6):
        self._proxy = _SinkProxy(sink)
        self._gz: Optional[gzip.GzipFile] = gzip.GzipFile(fileobj=self._proxy, mode="wb", compresslevel=compresslevel)
        self._offset = 0
        self._entry: Optional[str] = None
        self._declared = 0
        self._written = 0

    def _emit(self, data: bytes) -> None:
        assert self._gz is not None
        self._gz.write(data)
        self._offset += len(data)

    def _finish_entry(self) -> None:
        if self._entry is None:
            return
        if self._written != self._declared:
            raise ShortWrite(self._entry, self._declared, self._written)
        remainder = self._declared % tarfile.BLOCKSIZE
        if remainder:
            self._emit(tarfile.NUL * (tarfile.BLOCKSIZE - remainder))
        self._entry = None

    def write_entry_header(self, name: str, mode: int, size: int, mtime: Optional[float] = None) -> None:
        if self._gz is None:
            raise RuntimeError("Archive not open")
        self._finish_entry()
        info = tarfile.TarInfo(name)
        info.type = tarfile.REGTYPE
        info.mode = mode & 0o7777
        info.size = size
        info.mtime = int(time.time() if mtime is None else mtime)
        self._emit(info.tobuf(tarfile.DEFAULT_FORMAT, tarfile.ENCODING, "surrogateescape"))
        self._entry = name
        self._declared = size
        self._written = 0

    def write(self, data: bytes) -> int:
        if self._entry is None:
            raise RuntimeError("write_entry_header must be called before writing entry data")
        if self._written + len(data) > self._declared:
            raise EntryOverflow(f"entry '{self._entry}' exceeds its declared size of {self._declared} bytes")
        self._emit(data)
        self._written += len(data)
        return len(data)

    def close(self) -> None:
        if self._gz is None:
            return
        self._finish_entry()
        # End-of-archive marker, then pad to a full record like tarfile does.
        self._emit(tarfile.NUL * (tarfile.BLOCKSIZE * 2))
        remainder = self._offset % tarfile.RECORDSIZE
        if remainder:
            self._emit(tarfile.NUL * (tarfile.RECORDSIZE - remainder))
        gz, self._gz = self._gz, None
        gz.close()

    def abort(self) -> None:
        self._proxy.detach()
        self._entry = None
        gz, self._gz = self._gz, None
        if gz is not None:
            gz.close()


class ZipWriter(CodecWriter):
    def __init__(self, sink: BinaryIO, compresslevel: int = 6):
        self._proxy = _SinkProxy(sink)
        self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
            self._proxy, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel
        )
        self._fh = None
        self._entry: Optional[str] = None
        self._declared = 0
        self._written = 0

    def _finish_entry(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        fh.close()
        if self._written != self._declared:
            raise ShortWrite(self._entry or "", self._declared, self._written)
        self._entry = None

    def write_entry_header(self, name: str, mode: int, size: int, mtime: Optional[float] = None) -> None:
        if self._zip is None:
            raise RuntimeError("Archive not open")
        self._finish_entry()
        stamp = time.localtime(time.time() if mtime is None else mtime)
        date_time = (max(stamp.tm_year, 1980),) + tuple(stamp[1:6])
        info = zipfile.ZipInfo(name, date_time=date_time)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = ((0o100000 | (mode & 0o7777)) & 0xFFFF) << 16
        info.file_size = size
        self._fh = self._zip.open(info, mode="w", force_zip64=size > zipfile.ZIP64_LIMIT)
        self._entry = name
        self._declared = size
        self._written = 0

    def write(self, data: bytes) -> int:
        if self._fh is None:
            raise RuntimeError("write_entry_header must be called before writing entry data")
        if self._written + len(data) > self._declared:
            raise EntryOverflow(f"entry '{self._entry}' exceeds its declared size of {self._declared} bytes")
        n = self._fh.write(data)
        self._written += n
        return n

    def close(self) -> None:
        if self._zip is None:
            return
        self._finish_entry()
        zf, self._zip = self._zip, None
        zf.close()

    def abort(self) -> None:
        self._proxy.detach()
        fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()
        zf, self._zip = self._zip, None
        if zf is not None:
            zf.close()


def open_codec_writer(compression: str, sink: BinaryIO) -> CodecWriter:
    if compression == COMP_TAR_GZ:
        return TarGzWriter(sink)
    if compression == COMP_ZIP:
        return ZipWriter(sink)
    if compression == COMP_TAR_BZ2:
        raise UnsupportedCompression("bzip2 packages can be unpacked but not written")
    raise UnsupportedCompression(f"unsupported compression method: {compression}")


class CodecReader:
    """One read contract over every backend.

    ``next`` returns the next regular entry's header, or None once the archive
    is exhausted; ``read`` returns bytes of the current entry (b"" at its end).
    """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def next(self) -> Optional[EntryHeader]:
        raise NotImplementedError

    def read(self, size: int = COPY_CHUNK_SIZE) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


# tarfile wraps decompressor failures in ReadError; gzip/zlib can still leak their own
_TAR_ERRORS = (tarfile.TarError, zlib.error, EOFError, gzip.BadGzipFile)


class TarReader(CodecReader):
    def __init__(self, source: BinaryIO, compression: str):
        mode = "r|gz" if compression == COMP_TAR_GZ else "r|bz2"
        self._current = None
        self._current_name = ""
        try:
            self._tar: Optional[tarfile.TarFile] = tarfile.open(fileobj=source, mode=mode, bufsize=COPY_CHUNK_SIZE)
        except _TAR_ERRORS as exc:
            raise MalformedArchive(f"cannot read {compression} stream: {exc}") from exc

    def next(self) -> Optional[EntryHeader]:
        if self._tar is None:
            raise RuntimeError("Archive not open")
        self._current = None
        while True:
            try:
                info = self._tar.next()
            except _TAR_ERRORS as exc:
                raise MalformedArchive(f"corrupt or truncated archive: {exc}") from exc
            if info is None:
                return None
            if not info.isreg():
                continue
            self._current = self._tar.extractfile(info)
            self._current_name = info.name
            return EntryHeader(name=info.name, mode=info.mode, size=info.size)

    def read(self, size: int = COPY_CHUNK_SIZE) -> bytes:
        if self._current is None:
            return b""
        try:
            return self._current.read(size)
        except _TAR_ERRORS as exc:
            raise MalformedArchive(f"corrupt or truncated entry '{self._current_name}': {exc}") from exc

    def close(self) -> None:
        self._current = None
        if self._tar is not None:
            tar, self._tar = self._tar, None
            tar.close()


def _is_seekable(source: BinaryIO) -> bool:
    seekable = getattr(source, "seekable", None)
    if seekable is None:
        return False
    try:
        return bool(seekable())
    except (OSError, ValueError):
        return False


class ZipReader(CodecReader):
    """Zip needs its central directory (at the end), so the payload must be seekable.

    Non-seekable sources such as standard input or a decrypting stream are
    spooled to a temporary file first.
    """

    def __init__(self, source: BinaryIO):
        self._spool = None
        if not _is_seekable(source):
            self._spool = tempfile.TemporaryFile()
            try:
                shutil.copyfileobj(source, self._spool, COPY_CHUNK_SIZE)
                self._spool.seek(0)
            except BaseException:
                self._release_spool()
                raise
            source = self._spool
        try:
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(source, mode="r")
        except (zipfile.BadZipFile, EOFError) as exc:
            self._release_spool()
            raise MalformedArchive(f"cannot read zip payload: {exc}") from exc
        self._members = [i for i in self._zip.infolist() if not i.is_dir()]
        self._pos = 0
        self._current = None
        self._current_name = ""

    def _release_spool(self) -> None:
        if self._spool is not None:
            spool, self._spool = self._spool, None
            spool.close()

    def _close_current(self) -> None:
        if self._current is not None:
            cur, self._current = self._current, None
            cur.close()

    def next(self) -> Optional[EntryHeader]:
        if self._zip is None:
            raise RuntimeError("Archive not open")
        self._close_current()
        if self._pos >= len(self._members):
            return None
        info = self._members[self._pos]
        self._pos += 1
        mode = (info.external_attr >> 16) & 0o7777 or default_file_mode()
        try:
            self._current = self._zip.open(info)
        except (zipfile.BadZipFile, NotImplementedError) as exc:
            raise MalformedArchive(f"cannot open zip entry '{info.filename}': {exc}") from exc
        self._current_name = info.filename
        return EntryHeader(name=info.filename, mode=mode, size=info.file_size)

    def read(self, size: int = COPY_CHUNK_SIZE) -> bytes:
        if self._current is None:
            return b""
        try:
            return self._current.read(size)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise MalformedArchive(f"corrupt zip entry '{self._current_name}': {exc}") from exc

    def close(self) -> None:
        self._close_current()
        if self._zip is not None:
            zf, self._zip = self._zip, None
            zf.close()
        self._release_spool()


def open_codec_reader(compression: str, source: BinaryIO) -> CodecReader:
    if compression in (COMP_TAR_GZ, COMP_TAR_BZ2):
        return TarReader(source, compression)
    if compression == COMP_ZIP:
        return ZipReader(source)
    raise UnsupportedCompression(f"unsupported compression method: {compression}")
