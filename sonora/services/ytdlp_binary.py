"""
yt-dlp command-line binary: location, installation and availability
"""
import asyncio
import logging
import os
import shutil
import stat
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import IO

import aiohttp

logger = logging.getLogger(__name__)

BINARY_NAME = "yt-dlp.exe" if sys.platform == "win32" else "yt-dlp"
DEFAULT_INSTALL_PATH = Path.home() / ".cache" / "sonora" / BINARY_NAME
DOWNLOAD_URL = f"https://github.com/yt-dlp/yt-dlp/releases/latest/download/{BINARY_NAME}"

STREAM_ARGS = [
    "--no-playlist",
    "-f",
    "bestaudio[ext=webm]/bestaudio[ext=m4a]/bestaudio",
    "--no-warnings",
    "--no-progress",
]


def resolve_env_binary_path(value: str) -> Path:
    """A directory (existing, or written with a trailing slash) gets the binary name appended."""
    path = Path(value).expanduser().resolve()
    if path.is_dir() or value.endswith(("/", os.sep)):
        return path / BINARY_NAME
    return path


def ensure_stdout_args(args: list[str]) -> list[str]:
    if "-o" in args or "--output" in args:
        return list(args)
    return [*args, "-o", "-"]


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class YtDlpBinary:
    """Locates the yt-dlp executable, downloading it on first use when allowed."""

    def __init__(
        self,
        env_path: str | None = None,
        auto_download: bool = True,
        install_path: Path = DEFAULT_INSTALL_PATH,
        download_url: str = DOWNLOAD_URL,
    ):
        self.env_path = env_path
        self.auto_download = auto_download
        self.install_path = install_path
        self.download_url = download_url
        self._path: str | None = None
        self._install_task: asyncio.Task | None = None
        self._available: bool | None = None
        self._probe_lock = asyncio.Lock()

    async def _download(self, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading yt-dlp to {target}")
        timeout = aiohttp.ClientTimeout(total=120)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.download_url) as resp:
                resp.raise_for_status()
                payload = await resp.read()

        partial_path = target.with_suffix(".part")
        partial_path.write_bytes(payload)
        partial_path.chmod(partial_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        partial_path.replace(target)
        logger.info("yt-dlp downloaded")

    async def _ensure_installed(self, target: Path) -> None:
        if _is_executable(target):
            return
        # Concurrent resolutions share one download
        task = self._install_task
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            self._install_task = asyncio.create_task(self._download(target))
        await asyncio.shield(self._install_task)

    async def resolve_path(self) -> str:
        """Path of the binary: env override, then PATH, then the managed download."""
        if self._path:
            return self._path

        if self.env_path:
            target = resolve_env_binary_path(self.env_path)
            if self.auto_download:
                await self._ensure_installed(target)
            self._path = str(target)
            return self._path

        found = shutil.which(BINARY_NAME)
        if found:
            self._path = found
            return found

        if self.auto_download:
            await self._ensure_installed(self.install_path)
            self._path = str(self.install_path)
            return self._path

        return BINARY_NAME

    async def _probe(self) -> bool:
        try:
            path = await self.resolve_path()
            proc = await asyncio.create_subprocess_exec(
                path, "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=15.0)
        except Exception as e:
            logger.warning(f"yt-dlp is not available ({e}); install yt-dlp or set YTDLP_PATH")
            return False
        if proc.returncode != 0:
            logger.warning(f"yt-dlp --version exited with {proc.returncode}")
            return False
        logger.info(f"yt-dlp {out.decode().strip()} available")
        return True

    async def is_available(self) -> bool:
        """Probe once; the answer is kept for the life of the process."""
        if self._available is None:
            async with self._probe_lock:
                if self._available is None:
                    self._available = await self._probe()
        return self._available

    async def spawn_stream(self, url: str, args: list[str] | None = None) -> tuple[subprocess.Popen, IO[bytes]]:
        """Start yt-dlp writing the audio for ``url`` to stdout.

        Returns the process and the temporary file collecting its stderr.
        """
        path = await self.resolve_path()
        argv = [path, *ensure_stdout_args([*(args or STREAM_ARGS), url])]
        stderr_file = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
            )
        except OSError:
            stderr_file.close()
            raise
        return process, stderr_file
