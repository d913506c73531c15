"""Global fixtures for the AWS CLI gateway test suite."""

import io
import os
import stat
import tarfile
import time
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from channels.base import BaseChannel
from core.errors import DownloadFailed


# ── FakeChannel ──


class FakeChannel(BaseChannel):
    """Test double that records all interactions."""

    name = "fake"

    def __init__(self):
        super().__init__({"max_message_length": 4096, "parse_mode": "HTML"})
        self.sent: List[Tuple[str, str]] = []  # (chat_id, text)
        self.typing_count: int = 0

    async def start(self):
        pass

    async def stop(self):
        pass

    async def send_text(self, chat_id: str, text: str) -> int:
        self.sent.append((chat_id, text))
        return len(self.sent)

    async def send_typing(self, chat_id: str):
        self.typing_count += 1

    def last_sent_text(self) -> Optional[str]:
        return self.sent[-1][1] if self.sent else None


# ── FakeDownloader ──


class FakeDownloader:
    """Serves in-memory payloads by URL and records every request."""

    def __init__(self, payloads: Optional[Dict[str, bytes]] = None):
        self.payloads = dict(payloads or {})
        self.calls: List[str] = []

    async def fetch_to_file(self, url: str, dest: Path) -> int:
        self.calls.append(url)
        if url not in self.payloads:
            raise DownloadFailed("bad status: 404 Not Found")
        data = self.payloads[url]
        Path(dest).write_bytes(data)
        return len(data)


# ── Archive builders ──


def build_tar_gz(
    files: Dict[str, bytes],
    *,
    dirs: Iterable[str] = (),
    modes: Optional[Dict[str, int]] = None,
    symlinks: Optional[Dict[str, str]] = None,
) -> bytes:
    """Build a tar.gz in memory; names are written verbatim."""
    modes = modes or {}
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            info.mtime = int(time.time())
            tf.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = modes.get(name, 0o644)
            info.mtime = int(time.time())
            tf.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tf.addfile(info)
    return buf.getvalue()


def build_zip(
    files: Dict[str, bytes],
    *,
    dirs: Iterable[str] = (),
    modes: Optional[Dict[str, int]] = None,
    symlinks: Optional[Dict[str, str]] = None,
) -> bytes:
    """Build a zip in memory with unix mode bits in the external attributes."""
    modes = modes or {}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name in dirs:
            info = zipfile.ZipInfo(name.rstrip("/") + "/")
            info.external_attr = (stat.S_IFDIR | 0o755) << 16
            zf.writestr(info, b"")
        for name, data in files.items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (stat.S_IFREG | modes.get(name, 0o644)) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)
        for name, target in (symlinks or {}).items():
            info = zipfile.ZipInfo(name)
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, target)
    return buf.getvalue()


# ── Fake AWS CLI ──

FAKE_AWS_SCRIPT = """#!/bin/sh
echo "region=${AWS_DEFAULT_REGION:-}"
echo "home=$HOME pager=[$AWS_PAGER]"
echo "args=$*"
"""

FAKE_LOADER_SCRIPT = """#!/bin/sh
# stand-in for ld-linux: --library-path <dirs> <binary> args...
echo "loader lib=$2"
shift 2
exec "$@"
"""


def write_executable(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    os.chmod(path, 0o755)
    return path


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def deps_dir(tmp_path):
    return tmp_path / "aws_deps"


@pytest.fixture
def populated_bundle(deps_dir):
    """A cached bundle install with an (empty) glibc dir and no loader."""
    root = deps_dir / "bundle"
    write_executable(root / "awscli" / "dist" / "aws", FAKE_AWS_SCRIPT)
    (root / "glibc").mkdir(parents=True, exist_ok=True)
    return deps_dir


@pytest.fixture
def bundle_tarball():
    """A bundle tar.gz holding the fake CLI and a fake loader."""
    return build_tar_gz(
        {
            "awscli/dist/aws": FAKE_AWS_SCRIPT.encode(),
            "awscli/dist/libpython.so": b"\x7fELF-not-really",
            "glibc/ld-linux-x86-64.so.2": FAKE_LOADER_SCRIPT.encode(),
            "glibc/libc.so.6": b"libc",
            "README.md": b"ignored",
        },
        dirs=["awscli", "awscli/dist", "glibc"],
    )


@pytest.fixture
def official_zip():
    """An official-installer-shaped zip: aws/dist/* plus installer files."""
    return build_zip(
        {
            "aws/dist/aws": FAKE_AWS_SCRIPT.encode(),
            "aws/dist/libz.so.1": b"libz",
            "aws/install": b"#!/bin/sh\necho install\n",
            "aws/README.md": b"readme",
        },
        dirs=["aws", "aws/dist"],
        modes={"aws/dist/aws": 0o755, "aws/install": 0o755},
    )
