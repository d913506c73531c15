"""Streaming HTTP download of provisioning archives."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import aiohttp

from core.errors import DownloadFailed
from utils.constants import DEFAULT_DOWNLOAD_TIMEOUT_SECONDS, DOWNLOAD_CHUNK_BYTES

logger = logging.getLogger(__name__)


class Downloader:
    """Fetch a URL into a local file via aiohttp."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        max_bytes: Optional[int] = None,
    ):
        self.timeout_seconds = float(timeout_seconds)
        self.max_bytes = int(max_bytes) if max_bytes else None

    async def fetch_to_file(self, url: str, dest: Path) -> int:
        """Download *url* to *dest* and return the number of bytes written.

        The partial file is removed on any failure, including cancellation.
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        written = 0
        logger.info("Downloading %s -> %s", url, dest)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise DownloadFailed(f"bad status: {resp.status} {resp.reason or ''}".strip())
                    with open(dest, "wb") as out:
                        async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_BYTES):
                            written += len(chunk)
                            if self.max_bytes is not None and written > self.max_bytes:
                                raise DownloadFailed(f"download exceeds {self.max_bytes} bytes")
                            out.write(chunk)
        except DownloadFailed:
            _remove_quietly(dest)
            raise
        except asyncio.CancelledError:
            _remove_quietly(dest)
            raise
        except asyncio.TimeoutError as e:
            _remove_quietly(dest)
            raise DownloadFailed(f"download timed out after {self.timeout_seconds:.0f}s") from e
        except (aiohttp.ClientError, OSError) as e:
            _remove_quietly(dest)
            raise DownloadFailed(str(e) or e.__class__.__name__) from e

        logger.info("Downloaded %d bytes from %s", written, url)
        return written


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to remove partial download %s: %s", path, e)
