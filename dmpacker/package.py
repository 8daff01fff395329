from __future__ import annotations

"""Package writer and reader.

A package is a layer stack over one byte stream::

    pack:    files -> codec writer -> [encrypting stream] -> output file | stdout
    unpack:  input file | stdin -> [decrypting stream] -> codec reader -> files

Both sides own their layers through a ``contextlib.ExitStack``. On success
the layers close inside-out, writing trailers; on failure every layer is
aborted inside-out and whatever this run wrote to disk is removed.
"""

import logging
import os
import stat
import sys
from contextlib import ExitStack
from typing import BinaryIO, List, Optional

from .codec import CodecReader, CodecWriter, open_codec_reader, open_codec_writer
from .config import Config
from .constants import COPY_CHUNK_SIZE, DATA_FILE_EXT, default_file_mode
from .encryption import open_decrypting_stream, open_encrypting_stream
from .errors import FileAlreadyExists, MissingKey, ShortWrite, UnexpectedFileType
from .extensions import PackageFormat
from .pathutil import rel_entry_path, target_path, walk_sorted

logger = logging.getLogger(__name__)

# Pipeline states
IDLE = "idle"
OPENED = "opened"
STREAMING = "streaming"
FINISHED = "finished"
FAILED = "failed"


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _remove_dir_if_empty(path: str) -> None:
    try:
        os.rmdir(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        # Still holds files this run did not create
        logger.debug("keeping directory '%s': %s", path, exc)


def _make_parents(path: str) -> List[str]:
    """Create ``path`` and any missing ancestors; returns the ones created, outermost first."""
    missing = []
    while path and not os.path.isdir(path):
        missing.append(path)
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
    made = []
    for d in reversed(missing):
        try:
            os.mkdir(d)
        except FileExistsError:
            continue
        made.append(d)
    return made


class _Pipeline:
    """State and layer-stack handling shared by the writer and the reader."""

    def __init__(self, config: Config, key_data: Optional[bytes]):
        self.config = config
        self.format: PackageFormat = config.verify()
        if self.format.encrypted and not key_data:
            raise MissingKey("encrypted package requires key material")
        self._key_data = key_data
        self._stack: Optional[ExitStack] = None
        self.state = IDLE

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self._fail(exc_type, exc, tb)

    def open(self) -> None:
        if self.state != IDLE:
            raise RuntimeError(f"package pipeline cannot be opened in state '{self.state}'")
        stack = ExitStack()
        self._stack = stack
        try:
            self._build(stack)
        except BaseException:
            self._fail(*sys.exc_info())
            raise
        self.state = OPENED

    def _build(self, stack: ExitStack) -> None:
        raise NotImplementedError

    def close(self) -> None:
        if self.state in (FINISHED, FAILED) or self._stack is None:
            return
        stack, self._stack = self._stack, None
        try:
            stack.close()
        except BaseException:
            self.state = FAILED
            raise
        self.state = FINISHED

    def abort(self) -> None:
        """Tear every layer down without finishing the package."""
        self._fail(RuntimeError, RuntimeError("package aborted"), None)

    def _fail(self, exc_type, exc, tb) -> None:
        if self.state in (FINISHED, FAILED):
            return
        self.state = FAILED
        stack, self._stack = self._stack, None
        if stack is not None:
            stack.__exit__(exc_type, exc, tb)


class PackageWriter(_Pipeline):
    """Streams a directory of CSV files into a (possibly encrypted) package.

    Args:
        config: Run settings; ``package_path`` empty means standard output.
        key_data: Public key bytes, required when the package is encrypted.
        sink: Stream used instead of standard output when no path is set.
        armor: ASCII-armor the encrypted output.
    """

    def __init__(
        self,
        config: Config,
        *,
        key_data: Optional[bytes] = None,
        sink: Optional[BinaryIO] = None,
        armor: bool = False,
    ):
        super().__init__(config, key_data)
        self._sink = sink
        self._armor = armor
        self._codec: Optional[CodecWriter] = None
        self.entries: List[str] = []

    def _open_output(self, stack: ExitStack) -> BinaryIO:
        path = self.config.package_path
        if not path:
            out = self._sink if self._sink is not None else sys.stdout.buffer
            if hasattr(out, "flush"):
                stack.callback(out.flush)
            return out

        def discard_partial(exc_type, exc, tb):
            if exc_type is not None:
                logger.debug("removing partial package '%s'", path)
                _remove_quietly(path)
            return False

        try:
            fh = open(path, "xb")
        except FileExistsError as exc:
            raise FileAlreadyExists(path) from exc
        # Pushed before the file so it runs after the file is closed
        stack.push(discard_partial)
        return stack.enter_context(fh)

    def _build(self, stack: ExitStack) -> None:
        out = self._open_output(stack)
        if self.format.encrypted:
            assert self._key_data is not None
            name = os.path.basename(self.config.package_path)
            if name.lower().endswith(".gpg"):
                name = name[:-4]
            out = stack.enter_context(open_encrypting_stream(out, self._key_data, armor=self._armor, filename=name))
        self._codec = stack.enter_context(open_codec_writer(self.format.compression, out))

    def add_file(self, name: str, path: str) -> None:
        if self.state not in (OPENED, STREAMING) or self._codec is None:
            raise RuntimeError("package is not open for writing")
        self.state = STREAMING
        st = os.stat(path)
        logger.info("writing '%s' to data package", name)
        copied = 0
        with open(path, "rb") as fh:
            self._codec.write_entry_header(name, stat.S_IMODE(st.st_mode), st.st_size, st.st_mtime)
            while True:
                buf = fh.read(COPY_CHUNK_SIZE)
                if not buf:
                    break
                n = self._codec.write(buf)
                if n != len(buf):
                    raise ShortWrite(name, len(buf), n)
                copied += n
        if copied != st.st_size:
            raise ShortWrite(name, st.st_size, copied)
        self.entries.append(name)

    def pack(self, data_dir: str) -> List[str]:
        """Write every file under ``data_dir`` and finish the package.

        Returns the entry names in the order they were written.
        """
        if self.state == IDLE:
            self.open()
        own = os.path.abspath(self.config.package_path) if self.config.package_path else None
        try:
            for path in walk_sorted(data_dir):
                if own is not None and os.path.abspath(path) == own:
                    continue
                if not stat.S_ISREG(os.stat(path).st_mode) or not path.lower().endswith(DATA_FILE_EXT):
                    raise UnexpectedFileType(path)
                self.add_file(rel_entry_path(data_dir, path), path)
        except BaseException:
            self._fail(*sys.exc_info())
            raise
        self.close()
        return list(self.entries)


class PackageReader(_Pipeline):
    """Materialises the entries of a package into a directory.

    Args:
        config: Run settings; ``package_path`` empty means standard input.
        key_data: Private key bytes, required when the package is encrypted.
        passphrase: Unlocks a protected private key.
        source: Stream used instead of standard input when no path is set.
    """

    def __init__(
        self,
        config: Config,
        *,
        key_data: Optional[bytes] = None,
        passphrase: Optional[bytes] = None,
        source: Optional[BinaryIO] = None,
    ):
        super().__init__(config, key_data)
        self._passphrase = passphrase
        self._source = source
        self._payload = None
        self._codec: Optional[CodecReader] = None
        self._created: List[str] = []
        self._created_dirs: List[str] = []
        self.entries: List[str] = []

    def _build(self, stack: ExitStack) -> None:
        path = self.config.package_path
        if path:
            src = stack.enter_context(open(path, "rb"))
        else:
            src = self._source if self._source is not None else sys.stdin.buffer

        def discard_created(exc_type, exc, tb):
            if exc_type is not None:
                for created in reversed(self._created):
                    logger.debug("removing '%s' after failed unpack", created)
                    _remove_quietly(created)
                for created in reversed(self._created_dirs):
                    _remove_dir_if_empty(created)
            return False

        stack.push(discard_created)
        if self.format.encrypted:
            assert self._key_data is not None
            src = stack.enter_context(open_decrypting_stream(src, self._key_data, self._passphrase))
        self._payload = src
        self._codec = stack.enter_context(open_codec_reader(self.format.compression, src))

    def _extract(self, dest: str, mode: int, size: int, name: str) -> None:
        parent = os.path.dirname(dest)
        if parent:
            self._created_dirs.extend(_make_parents(parent))
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0)
        try:
            fd = os.open(dest, flags, (mode & 0o777) or default_file_mode())
        except FileExistsError as exc:
            raise FileAlreadyExists(dest) from exc
        self._created.append(dest)
        assert self._codec is not None
        copied = 0
        with os.fdopen(fd, "wb") as out:
            while True:
                buf = self._codec.read(COPY_CHUNK_SIZE)
                if not buf:
                    break
                out.write(buf)
                copied += len(buf)
        if copied != size:
            raise ShortWrite(name, size, copied)

    def unpack(self, data_dir: str) -> List[str]:
        """Extract every entry under ``data_dir``; returns the entry names."""
        if self.state == IDLE:
            self.open()
        assert self._codec is not None
        try:
            self.state = STREAMING
            self._created_dirs.extend(_make_parents(data_dir))
            while True:
                header = self._codec.next()
                if header is None:
                    break
                dest = target_path(data_dir, header.name)
                logger.info("unpacking '%s'", header.name)
                self._extract(dest, header.mode, header.size, header.name)
                self.entries.append(header.name)
            if self.format.encrypted:
                # The integrity check completes only at the end of the ciphertext
                while self._payload.read(COPY_CHUNK_SIZE):
                    pass
        except BaseException:
            self._fail(*sys.exc_info())
            raise
        self.close()
        return list(self.entries)
