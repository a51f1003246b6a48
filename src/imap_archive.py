"""
Archive Sinks

Output containers for the backup. Each folder is a namespace inside the
archive and each message an entry beneath it. Two container kinds are
supported behind the same ArchiveSink interface:

- ZIP: random-access container with a central index written on finalize.
- TAR: streaming container, optionally compressed with gzip, xz or
  Zstandard (the default, written through the ``zstandard`` package).

Every sink remembers the entry names it has written and skips a second
write of the same name, so a container never holds two records under one
name whatever its own duplicate-name behaviour is.
"""

from __future__ import annotations

import io
import logging
import stat
import tarfile
import time
import zipfile
import zlib

import zstandard

ENTRY_MODE = 0o755

FORMAT_ZIP = "zip"
FORMAT_TAR = "tar"
FORMAT_TAR_GZ = "tar.gz"
FORMAT_TAR_XZ = "tar.xz"
FORMAT_TAR_ZST = "tar.zst"
SUPPORTED_FORMATS = (FORMAT_TAR_ZST, FORMAT_TAR_GZ, FORMAT_TAR_XZ, FORMAT_TAR, FORMAT_ZIP)
DEFAULT_FORMAT = FORMAT_TAR_ZST

DEFAULT_ZSTD_LEVEL = 3

# Longest suffixes first so ".tar.gz" wins over ".tar"
_SUFFIX_FORMATS = (
    (".tar.zst", FORMAT_TAR_ZST),
    (".tzst", FORMAT_TAR_ZST),
    (".tar.gz", FORMAT_TAR_GZ),
    (".tgz", FORMAT_TAR_GZ),
    (".tar.xz", FORMAT_TAR_XZ),
    (".txz", FORMAT_TAR_XZ),
    (".tar", FORMAT_TAR),
    (".zip", FORMAT_ZIP),
)

_TAR_COMPRESSION = {
    FORMAT_TAR: "",
    FORMAT_TAR_GZ: "gz",
    FORMAT_TAR_XZ: "xz",
    FORMAT_TAR_ZST: "zst",
}

_WRITE_ERRORS = (OSError, ValueError, zlib.error, tarfile.TarError, zipfile.LargeZipFile, zstandard.ZstdError)

logger = logging.getLogger(__name__)


class ArchiveWriteError(Exception):
    """The archive could not be written. The whole backup is untrustworthy after this."""


class ArchiveSink:
    """
    Base class for archive containers.

    Subclasses implement ``_write`` and ``_finalize``; this class handles
    duplicate detection, bookkeeping and turning I/O failures into
    ArchiveWriteError.
    """

    format_name = None

    def __init__(self, path):
        self.path = path
        self.entry_count = 0
        self.finalized = False
        self._written: set[str] = set()

    def begin_namespace(self, name: str) -> None:
        """Start a folder namespace. Only containers with explicit directory records need this."""

    def write_entry(self, path: str, data: bytes, mode: int = ENTRY_MODE) -> bool:
        """
        Append one entry. Returns False when ``path`` was already written
        and the write was skipped.
        """
        if path in self._written:
            logger.debug("%s is already archived, skipping duplicate", path)
            return False
        try:
            self._write(path, data, mode)
        except _WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Could not write {path} to {self.path}: {e}") from e
        self._written.add(path)
        self.entry_count += 1
        return True

    def finalize(self) -> None:
        """Write the container trailer or index and close the file."""
        try:
            self._finalize()
        except _WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Could not finalize {self.path}: {e}") from e
        self.finalized = True

    def _write(self, path, data, mode):
        raise NotImplementedError

    def _finalize(self):
        raise NotImplementedError


class ZipArchiveSink(ArchiveSink):
    format_name = FORMAT_ZIP

    def __init__(self, path, compresslevel=None):
        super().__init__(path)
        self._zip = zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel)

    def begin_namespace(self, name):
        dirname = f"{name.rstrip('/')}/"
        if dirname in self._written:
            return
        info = zipfile.ZipInfo(dirname, date_time=time.localtime()[:6])
        # 0x10 is the MS-DOS directory attribute
        info.external_attr = ((stat.S_IFDIR | ENTRY_MODE) << 16) | 0x10
        try:
            self._zip.writestr(info, b"")
        except _WRITE_ERRORS as e:
            raise ArchiveWriteError(f"Could not add folder {name} to {self.path}: {e}") from e
        self._written.add(dirname)

    def _write(self, path, data, mode):
        info = zipfile.ZipInfo(path, date_time=time.localtime()[:6])
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = (stat.S_IFREG | mode) << 16
        self._zip.writestr(info, data)

    def _finalize(self):
        self._zip.close()


class TarArchiveSink(ArchiveSink):
    """Streaming tar; nothing is seeked, so the output can be arbitrarily large."""

    def __init__(self, path, compression="", level=None):
        super().__init__(path)
        self.format_name = f"tar.{compression}" if compression else FORMAT_TAR
        self._file = open(path, "wb")
        self._zstd_writer = None
        try:
            if compression == "zst":
                compressor = zstandard.ZstdCompressor(level=level if level is not None else DEFAULT_ZSTD_LEVEL)
                self._zstd_writer = compressor.stream_writer(self._file)
                self._tar = tarfile.open(fileobj=self._zstd_writer, mode="w|")
            else:
                self._tar = tarfile.open(fileobj=self._file, mode=f"w|{compression}")
        except BaseException:
            self._file.close()
            raise

    def _write(self, path, data, mode):
        info = tarfile.TarInfo(path)
        info.size = len(data)
        info.mode = mode
        info.mtime = int(time.time())
        self._tar.addfile(info, io.BytesIO(data))

    def _finalize(self):
        try:
            self._tar.close()
            if self._zstd_writer is not None:
                # Ends the zstd frame and closes the underlying file
                self._zstd_writer.close()
        finally:
            self._file.close()


def detect_format(path):
    """Guess the archive format from the output file name, or None."""
    name = str(path).lower()
    for suffix, fmt in _SUFFIX_FORMATS:
        if name.endswith(suffix):
            return fmt
    return None


def open_archive(path, fmt=None, compression_level=None) -> ArchiveSink:
    """
    Create the archive at ``path``, truncating any existing file.

    The format comes from ``fmt``, else from the file suffix, else DEFAULT_FORMAT.
    """
    fmt = fmt or detect_format(path) or DEFAULT_FORMAT
    if fmt not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported archive format: {fmt}")

    try:
        if fmt == FORMAT_ZIP:
            return ZipArchiveSink(path, compresslevel=compression_level)
        return TarArchiveSink(path, compression=_TAR_COMPRESSION[fmt], level=compression_level)
    except _WRITE_ERRORS as e:
        raise ArchiveWriteError(f"Could not open archive {path}: {e}") from e
