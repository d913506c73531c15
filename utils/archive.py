"""Safe extraction of zip and tar.gz archives.

Guards against the usual archive attacks:
- Zip Slip / tar slip (``..`` traversal, absolute member names)
- Symlink and hardlink escapes (link entries are never materialized)
- Decompression bombs (per-entry and per-archive byte caps, enforced on the
  bytes actually read, not only on header metadata)

Both formats are read through one entry abstraction so the extraction loop
is shared. Entries are processed strictly in archive order.
"""

from __future__ import annotations

import io
import logging
import os
import stat
import tarfile
import threading
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Collection, Iterator, List, Optional, Tuple, Union

from core.errors import (
    EntryTooLarge,
    ExtractionCancelled,
    ExtractionFailed,
    ExtractionIOError,
    TotalTooLarge,
)
from utils.constants import DOWNLOAD_CHUNK_BYTES, MAX_ENTRY_BYTES, MAX_EXTRACT_BYTES
from utils.safe_path import check_entry_name, safe_join

logger = logging.getLogger(__name__)

ArchiveSource = Union[str, os.PathLike, bytes, bytearray]
EntryOpener = Callable[[], BinaryIO]

FORMAT_ZIP = "zip"
FORMAT_TAR_GZ = "tar.gz"

_ZIP_MAGIC = b"PK\x03\x04"
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass(frozen=True)
class ExtractionLimits:
    max_entry_bytes: int = MAX_ENTRY_BYTES
    max_total_bytes: int = MAX_EXTRACT_BYTES


@dataclass
class ArchiveEntry:
    """Format-neutral view of one archive member."""
    name: str
    is_dir: bool
    declared_size: int
    is_symlink: bool = False
    is_special: bool = False
    mode: int = 0

    @property
    def is_executable(self) -> bool:
        return bool(self.mode & 0o111)


@dataclass
class ExtractionReport:
    files: List[Path] = field(default_factory=list)
    dirs: List[Path] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    bytes_written: int = 0


def detect_format(source: ArchiveSource, fmt: Optional[str] = None) -> str:
    """Return ``zip`` or ``tar.gz`` from an explicit hint, file suffix or magic bytes."""
    if fmt:
        hint = fmt.lower().lstrip(".")
        if hint == "zip":
            return FORMAT_ZIP
        if hint in ("tar.gz", "tgz"):
            return FORMAT_TAR_GZ
        raise ExtractionFailed(f"unsupported archive format: {fmt}")

    if isinstance(source, (bytes, bytearray)):
        head = bytes(source[:4])
    else:
        name = os.fspath(source).lower()
        if name.endswith(".zip"):
            return FORMAT_ZIP
        if name.endswith((".tar.gz", ".tgz")):
            return FORMAT_TAR_GZ
        try:
            with open(source, "rb") as fh:
                head = fh.read(4)
        except OSError as e:
            raise ExtractionIOError(f"cannot read archive: {e}") from e

    if head.startswith(_ZIP_MAGIC):
        return FORMAT_ZIP
    if head.startswith(_GZIP_MAGIC):
        return FORMAT_TAR_GZ
    raise ExtractionFailed("unrecognized archive format")


def _as_fileobj(source: ArchiveSource) -> BinaryIO:
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source))
    return open(source, "rb")


def _zip_entry(info: zipfile.ZipInfo) -> ArchiveEntry:
    unix_mode = (info.external_attr >> 16) & 0xFFFF
    file_type = stat.S_IFMT(unix_mode)
    is_symlink = stat.S_ISLNK(unix_mode)
    is_dir = info.is_dir() or stat.S_ISDIR(unix_mode)
    is_special = bool(file_type) and not (
        stat.S_ISREG(unix_mode) or stat.S_ISDIR(unix_mode) or is_symlink
    )
    return ArchiveEntry(
        name=info.filename,
        is_dir=is_dir,
        declared_size=int(info.file_size),
        is_symlink=is_symlink,
        is_special=is_special,
        mode=stat.S_IMODE(unix_mode),
    )


def _tar_entry(member: tarfile.TarInfo) -> ArchiveEntry:
    return ArchiveEntry(
        name=member.name,
        is_dir=member.isdir(),
        declared_size=int(member.size),
        is_symlink=member.issym() or member.islnk(),
        is_special=not (member.isreg() or member.isdir() or member.issym() or member.islnk()),
        mode=stat.S_IMODE(member.mode),
    )


@contextmanager
def _open_entries(source: ArchiveSource, fmt: str) -> Iterator[Iterator[Tuple[ArchiveEntry, EntryOpener]]]:
    fileobj = _as_fileobj(source)
    try:
        if fmt == FORMAT_ZIP:
            with zipfile.ZipFile(fileobj) as zf:

                def _iter_zip() -> Iterator[Tuple[ArchiveEntry, EntryOpener]]:
                    for info in zf.infolist():
                        yield _zip_entry(info), (lambda _info=info: zf.open(_info))

                yield _iter_zip()
        else:
            with tarfile.open(fileobj=fileobj, mode="r:gz") as tf:

                def _iter_tar() -> Iterator[Tuple[ArchiveEntry, EntryOpener]]:
                    # Iterating the TarFile reads headers lazily, in archive order.
                    for member in tf:
                        yield _tar_entry(member), (lambda _member=member: tf.extractfile(_member))

                yield _iter_tar()
    finally:
        fileobj.close()


def _copy_bounded(opener: EntryOpener, target: Path, declared_size: int, entry_name: str) -> int:
    """Copy at most *declared_size* bytes; fail if the stream holds more or fewer."""
    written = 0
    try:
        with opener() as src, open(target, "wb") as out:
            while True:
                want = min(DOWNLOAD_CHUNK_BYTES, declared_size + 1 - written)
                chunk = src.read(want)
                if not chunk:
                    break
                if written + len(chunk) > declared_size:
                    raise EntryTooLarge(
                        f"archive entry larger than declared: {entry_name}",
                        detail=f"declared={declared_size}",
                    )
                out.write(chunk)
                written += len(chunk)
    except ExtractionFailed:
        target.unlink(missing_ok=True)
        raise
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile, tarfile.TarError) as e:
        target.unlink(missing_ok=True)
        raise ExtractionIOError(f"failed to extract {entry_name}: {e}") from e

    if written != declared_size:
        target.unlink(missing_ok=True)
        raise ExtractionIOError(
            f"archive entry size mismatch: {entry_name}",
            detail=f"copied={written} want={declared_size}",
        )
    return written


def _relative_name(name: str, strip_prefix: str) -> Optional[str]:
    rel = name
    while rel.startswith("./"):
        rel = rel[2:]
    if strip_prefix:
        if not rel.startswith(strip_prefix):
            return None
        rel = rel[len(strip_prefix):]
    return rel.strip("/")


def extract_archive(
    source: ArchiveSource,
    dest_root: Union[str, os.PathLike],
    *,
    limits: Optional[ExtractionLimits] = None,
    path_filter: Optional[Callable[[str], bool]] = None,
    strip_prefix: str = "",
    executable_names: Collection[str] = (),
    cancel_event: Optional[threading.Event] = None,
    fmt: Optional[str] = None,
) -> ExtractionReport:
    """Extract regular files and directories from *source* into *dest_root*.

    Args:
        source: Archive path or raw archive bytes.
        dest_root: Destination directory (created if missing).
        limits: Per-entry and cumulative byte caps.
        path_filter: Predicate over the member name; members failing it are
            skipped without touching the filesystem.
        strip_prefix: Members must start with this prefix, which is removed
            before joining onto *dest_root*.
        executable_names: File names (basename or relative path) forced to 0o755.
        cancel_event: Checked between entries; when set the extraction stops.
        fmt: ``zip`` or ``tar.gz``; detected when omitted.

    Raises:
        PathEscapeError, EntryTooLarge, TotalTooLarge, ExtractionIOError,
        ExtractionCancelled. A failed extraction leaves already written
        entries on disk; callers should extract into a fresh directory.
    """
    limits = limits or ExtractionLimits()
    archive_format = detect_format(source, fmt)
    dest = Path(os.path.abspath(os.fspath(dest_root)))
    try:
        dest.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExtractionIOError(f"cannot create destination {dest}: {e}") from e

    report = ExtractionReport()
    total = 0
    forced_exec = {str(n).strip("/") for n in executable_names}

    try:
        with _open_entries(source, archive_format) as entries:
            for entry, opener in entries:
                if cancel_event is not None and cancel_event.is_set():
                    raise ExtractionCancelled("extraction cancelled")

                name = check_entry_name(entry.name)
                if path_filter is not None and not path_filter(name):
                    report.skipped.append(name)
                    continue
                rel = _relative_name(name, strip_prefix)
                if not rel:
                    report.skipped.append(name)
                    continue
                if entry.is_symlink or entry.is_special:
                    logger.debug("Skipping link/special archive entry: %s", name)
                    report.skipped.append(name)
                    continue

                target = safe_join(dest, rel)

                if entry.is_dir:
                    target.mkdir(mode=0o755, parents=True, exist_ok=True)
                    report.dirs.append(target)
                    continue

                size = entry.declared_size
                if size < 0 or size > limits.max_entry_bytes:
                    raise EntryTooLarge(f"archive entry too large: {size} bytes", detail=name)
                if total + size > limits.max_total_bytes:
                    raise TotalTooLarge("archive total size exceeds limit", detail=name)

                target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
                written = _copy_bounded(opener, target, size, name)
                total += written

                make_exec = entry.is_executable or rel in forced_exec or target.name in forced_exec
                os.chmod(target, 0o755 if make_exec else 0o644)
                report.files.append(target)
    except ExtractionFailed:
        raise
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile, tarfile.TarError) as e:
        raise ExtractionIOError(f"failed to read archive: {e}") from e

    report.bytes_written = total
    logger.info(
        "Extracted %d files, %d dirs (%d bytes, %d skipped) into %s",
        len(report.files),
        len(report.dirs),
        total,
        len(report.skipped),
        dest,
    )
    return report
