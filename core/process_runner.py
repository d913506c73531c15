"""Run the provisioned AWS CLI as a subprocess and capture combined output."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from core.errors import ExecutionError
from core.resolver import RuntimeBundle
from utils.constants import DEFAULT_EXEC_TIMEOUT_SECONDS, DOWNLOAD_CHUNK_BYTES

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    output: bytes = b""
    exit_code: int = 0
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    def raise_for_status(self) -> None:
        if not self.ok:
            raise ExecutionError(self.error or f"exit status {self.exit_code}")


def build_argv(bundle: RuntimeBundle, args: Sequence[str]) -> List[str]:
    """Return the argv for *bundle*; the loader form passes the library path explicitly."""
    if bundle.uses_loader:
        return [
            str(bundle.loader_path),
            "--library-path",
            bundle.library_path,
            str(bundle.binary_path),
            *args,
        ]
    return [str(bundle.binary_path), *args]


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def run(
    bundle: RuntimeBundle,
    args: Sequence[str],
    env: Mapping[str, str],
    timeout: float = DEFAULT_EXEC_TIMEOUT_SECONDS,
) -> ExecutionResult:
    """Run the CLI with *args* and wait for it to exit.

    stdout and stderr are interleaved into one stream. A non-zero exit is
    reported in ``error`` alongside whatever output was produced. The child
    is killed when *timeout* elapses or when the calling task is cancelled.
    """
    argv = build_argv(bundle, args)
    started = time.monotonic()
    logger.info("Executing: aws %s (loader=%s)", " ".join(args), bundle.uses_loader)

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except FileNotFoundError as e:
        logger.error("Executable not found: %s", argv[0])
        return ExecutionResult(exit_code=-1, error=f"executable not found: {e.filename or argv[0]}")
    except OSError as e:
        logger.error("Failed to start %s: %s", argv[0], e)
        return ExecutionResult(exit_code=-1, error=f"failed to start: {e}")

    chunks: List[bytes] = []

    async def _drain() -> None:
        stream = process.stdout
        while stream is not None:
            chunk = await stream.read(DOWNLOAD_CHUNK_BYTES)
            if not chunk:
                break
            chunks.append(chunk)
        await process.wait()

    try:
        await asyncio.wait_for(_drain(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        logger.error("AWS CLI timed out after %ss", timeout)
        return ExecutionResult(
            output=b"".join(chunks),
            exit_code=-1,
            error=f"timed out after {timeout:g}s",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
    except asyncio.CancelledError:
        await _terminate(process)
        logger.info("AWS CLI cancelled; child killed")
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    code = process.returncode if process.returncode is not None else -1
    error = None
    if code < 0:
        error = f"terminated by signal {-code}"
    elif code != 0:
        error = f"exit status {code}"
    logger.info("AWS CLI exited with %s in %dms", code, duration_ms)
    return ExecutionResult(output=b"".join(chunks), exit_code=code, error=error, duration_ms=duration_ms)
