"""Provisioning of the AWS CLI runtime into a private dependency directory.

The cache is path-addressed: each strategy owns one install root under the
dependency directory, and ``InstallLayout.is_valid`` is the only check that
decides whether a network fetch is needed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from core.downloader import Downloader
from core.errors import (
    ExtractionIOError,
    NoDownloadURL,
    ProvisioningError,
    UnsupportedArchitecture,
)
from utils.archive import ExtractionLimits, extract_archive
from utils.constants import (
    BUNDLE_URL_ENV_PREFIX,
    DEFAULT_BUNDLE_URLS,
    DEFAULT_OFFICIAL_ZIP_URLS,
    LOADER_CANDIDATES,
    LOADER_GLOB,
    MACHINE_ARCH,
    OFFICIAL_ZIP_URL_ENV_PREFIX,
)

logger = logging.getLogger(__name__)

_INSTALL_LOCKS: Dict[str, asyncio.Lock] = {}


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def default_deps_dir() -> Path:
    return _repo_root() / "aws_deps"


def detect_arch(machine: Optional[str] = None) -> str:
    raw = str(machine or platform.machine()).strip().lower()
    return MACHINE_ARCH.get(raw, raw)


def is_executable(path: Path) -> bool:
    try:
        st = os.stat(path)
    except OSError:
        return False
    return os.path.isfile(path) and bool(st.st_mode & 0o111)


def find_loader(lib_dir: Optional[Path]) -> Optional[Path]:
    """Locate a glibc dynamic loader inside *lib_dir*."""
    if lib_dir is None or not lib_dir.is_dir():
        return None
    for name in LOADER_CANDIDATES:
        candidate = lib_dir / name
        if is_executable(candidate):
            return candidate
    matches = sorted(lib_dir.glob(LOADER_GLOB))
    if matches:
        os.chmod(matches[0], 0o755)
        return matches[0]
    return None


@dataclass(frozen=True)
class RuntimeBundle:
    """A ready-to-run binary plus how to load it.

    A bundle either carries ``loader_path`` (run through the dynamic loader
    with an explicit library path) or does not (run directly, relying on
    ``LD_LIBRARY_PATH``).
    """
    binary_path: Path
    library_dirs: Tuple[Path, ...] = ()
    loader_path: Optional[Path] = None

    @property
    def uses_loader(self) -> bool:
        return self.loader_path is not None

    @property
    def library_path(self) -> str:
        return ":".join(str(d) for d in self.library_dirs)

    def validate(self) -> "RuntimeBundle":
        if not is_executable(self.binary_path):
            raise ProvisioningError(f"binary not executable: {self.binary_path}")
        if self.loader_path is not None and not is_executable(self.loader_path):
            raise ProvisioningError(f"loader not executable: {self.loader_path}")
        return self


@dataclass(frozen=True)
class InstallLayout:
    """Where one strategy installs the runtime and what a valid install looks like."""
    root: Path
    binary_rel: str
    library_rels: Tuple[str, ...] = ()
    companion_rel: Optional[str] = None

    @property
    def binary_path(self) -> Path:
        return self.root / self.binary_rel

    @property
    def companion_dir(self) -> Optional[Path]:
        return self.root / self.companion_rel if self.companion_rel else None

    def is_valid(self, root: Optional[Path] = None) -> bool:
        base = root or self.root
        if not is_executable(base / self.binary_rel):
            return False
        if self.companion_rel and not (base / self.companion_rel).is_dir():
            return False
        return True

    def bundle(self) -> RuntimeBundle:
        return RuntimeBundle(
            binary_path=self.binary_path,
            library_dirs=tuple(self.root / rel for rel in self.library_rels),
            loader_path=find_loader(self.companion_dir),
        )


def _install_lock(root: Path) -> asyncio.Lock:
    key = str(root)
    lock = _INSTALL_LOCKS.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _INSTALL_LOCKS[key] = lock
    return lock


class ProvisioningStrategy:
    """Fetch one archive source and install it under ``layout.root``.

    Subclasses describe the archive (suffix, subtree filter, prefix to strip)
    and where the URLs come from.
    """

    name = "base"
    archive_suffix = ".bin"
    strip_prefix = ""

    def __init__(
        self,
        layout: InstallLayout,
        *,
        downloader: Optional[Downloader] = None,
        limits: Optional[ExtractionLimits] = None,
        url_env_prefix: str = "",
        default_urls: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        temp_dir: Optional[Path] = None,
    ):
        self.layout = layout
        self.downloader = downloader or Downloader()
        self.limits = limits or ExtractionLimits()
        self.url_env_prefix = url_env_prefix
        self.default_urls = dict(default_urls or {})
        self._environ = environ
        self.temp_dir = temp_dir

    # ── Hooks ──

    def path_filter(self, name: str) -> bool:
        return True

    def executable_names(self) -> Sequence[str]:
        return (self.layout.binary_rel,)

    # ── URL resolution ──

    def resolve_url(self, arch: str) -> str:
        environ = os.environ if self._environ is None else self._environ
        env_key = f"{self.url_env_prefix}{arch.upper()}"
        url = str(environ.get(env_key, "") or "").strip()
        if url:
            return url
        if arch not in self.default_urls:
            raise UnsupportedArchitecture(f"unsupported arch: {arch}")
        url = str(self.default_urls.get(arch) or "").strip()
        if not url:
            raise NoDownloadURL(f"no {self.name} url configured for arch {arch!r} (set {env_key})")
        return url

    # ── Provisioning ──

    def cached(self) -> Optional[RuntimeBundle]:
        """Return the installed bundle, or None when this strategy has not provisioned yet."""
        if self.layout.is_valid():
            return self.layout.bundle().validate()
        return None

    async def ensure(self, arch: str) -> RuntimeBundle:
        bundle = self.cached()
        if bundle is not None:
            return bundle

        async with _install_lock(self.layout.root):
            # A concurrent caller may have finished while we waited.
            if self.layout.is_valid():
                return self.layout.bundle().validate()
            url = self.resolve_url(arch)
            await self._provision(url)

        bundle = self.layout.bundle().validate()
        logger.info(
            "Provisioned %s runtime: binary=%s loader=%s",
            self.name,
            bundle.binary_path,
            bundle.loader_path,
        )
        return bundle

    def _temp_archive_path(self) -> Path:
        prefix = f"aws{self.name}-{os.getpid()}-{time.time_ns()}-"
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=self.archive_suffix, dir=self.temp_dir)
        os.close(fd)
        return Path(path)

    async def _provision(self, url: str) -> None:
        root = self.layout.root
        try:
            root.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProvisioningError(f"cannot create dependency dir {root.parent}: {e}") from e

        tmp = self._temp_archive_path()
        staging = root.parent / f".{root.name}.staging-{uuid.uuid4().hex[:12]}"
        try:
            try:
                await self.downloader.fetch_to_file(url, tmp)
            except ProvisioningError as e:
                raise type(e)(f"download {self.name}: {e.message}", detail=e.detail) from e

            cancel = threading.Event()
            try:
                await asyncio.to_thread(
                    extract_archive,
                    tmp,
                    staging,
                    limits=self.limits,
                    path_filter=self.path_filter,
                    strip_prefix=self.strip_prefix,
                    executable_names=self.executable_names(),
                    cancel_event=cancel,
                )
            except asyncio.CancelledError:
                cancel.set()
                raise
            except ProvisioningError as e:
                raise type(e)(f"extract {self.name}: {e.message}", detail=e.detail) from e

            self._install_staging(staging)
        finally:
            try:
                os.remove(tmp)
            except FileNotFoundError:
                pass
            shutil.rmtree(staging, ignore_errors=True)

    def _install_staging(self, staging: Path) -> None:
        """Move a freshly extracted tree into place; last writer wins."""
        binary = staging / self.layout.binary_rel
        if binary.is_file():
            os.chmod(binary, 0o755)
        if self.layout.companion_rel:
            find_loader(staging / self.layout.companion_rel)
        if not self.layout.is_valid(staging):
            raise ExtractionIOError(f"extract {self.name}: archive did not contain {self.layout.binary_rel}")

        root = self.layout.root
        if self.layout.is_valid():
            logger.info("Runtime already installed at %s by a concurrent writer", root)
            return
        try:
            if root.exists():
                shutil.rmtree(root)
            os.replace(staging, root)
        except OSError as e:
            if self.layout.is_valid():
                return
            raise ProvisioningError(f"install {self.name} into {root}: {e}") from e


class BundleStrategy(ProvisioningStrategy):
    """Prebuilt tar.gz carrying ``awscli/dist`` plus a private glibc."""

    name = "bundle"
    archive_suffix = ".tar.gz"
    _SUBTREES = ("awscli/dist", "glibc")

    def __init__(self, deps_dir: Path, **kwargs):
        layout = InstallLayout(
            root=Path(deps_dir) / "bundle",
            binary_rel="awscli/dist/aws",
            library_rels=("glibc", "awscli/dist"),
            companion_rel="glibc",
        )
        kwargs.setdefault("url_env_prefix", BUNDLE_URL_ENV_PREFIX)
        kwargs.setdefault("default_urls", DEFAULT_BUNDLE_URLS)
        super().__init__(layout, **kwargs)

    def path_filter(self, name: str) -> bool:
        rel = name[2:] if name.startswith("./") else name
        rel = rel.rstrip("/")
        return any(rel == tree or rel.startswith(tree + "/") for tree in self._SUBTREES)

    def executable_names(self) -> Sequence[str]:
        return (self.layout.binary_rel, *(f"glibc/{n}" for n in LOADER_CANDIDATES))


class OfficialZipStrategy(ProvisioningStrategy):
    """AWS's official installer zip; only ``aws/dist`` is kept."""

    name = "official_zip"
    archive_suffix = ".zip"
    strip_prefix = "aws/"

    def __init__(self, deps_dir: Path, **kwargs):
        layout = InstallLayout(
            root=Path(deps_dir) / "aws-official",
            binary_rel="dist/aws",
            library_rels=("dist",),
        )
        kwargs.setdefault("url_env_prefix", OFFICIAL_ZIP_URL_ENV_PREFIX)
        kwargs.setdefault("default_urls", DEFAULT_OFFICIAL_ZIP_URLS)
        super().__init__(layout, **kwargs)

    def path_filter(self, name: str) -> bool:
        return name.startswith("aws/dist/")


STRATEGY_TYPES: Dict[str, Callable[..., ProvisioningStrategy]] = {
    BundleStrategy.name: BundleStrategy,
    OfficialZipStrategy.name: OfficialZipStrategy,
}


class DependencyResolver:
    """Try provisioning strategies in order until one yields a runtime bundle."""

    def __init__(self, strategies: Sequence[ProvisioningStrategy]):
        self.strategies: List[ProvisioningStrategy] = list(strategies)

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "DependencyResolver":
        cfg = config if isinstance(config, dict) else {}
        deps_dir = Path(cfg.get("deps_dir") or default_deps_dir())
        downloader = Downloader(
            timeout_seconds=float(cfg.get("download_timeout_seconds", 300)),
            max_bytes=cfg.get("max_download_bytes"),
        )
        names = cfg.get("strategies") or [BundleStrategy.name, OfficialZipStrategy.name]
        strategies = []
        for name in names:
            factory = STRATEGY_TYPES.get(str(name))
            if factory is None:
                logger.warning("Unknown provisioning strategy %r ignored", name)
                continue
            strategies.append(factory(deps_dir, downloader=downloader))
        return cls(strategies)

    async def ensure(self, arch: Optional[str] = None) -> RuntimeBundle:
        arch = arch or detect_arch()
        if not self.strategies:
            raise ProvisioningError("no provisioning strategies configured")

        # Any strategy's valid install wins before a network fetch is attempted.
        for strategy in self.strategies:
            bundle = strategy.cached()
            if bundle is not None:
                return bundle

        failures: List[str] = []
        last_error: Optional[ProvisioningError] = None
        for strategy in self.strategies:
            try:
                return await strategy.ensure(arch)
            except ProvisioningError as e:
                logger.warning("Provisioning via %s failed: %s", strategy.name, e)
                failures.append(str(e))
                last_error = e

        if last_error is None:
            raise ProvisioningError("no provisioning strategy produced a runtime")
        raise type(last_error)("; ".join(failures)) from last_error
