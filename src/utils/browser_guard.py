"""Keeps a Chrome instance with remote debugging available for WhatsApp Web."""
from __future__ import annotations

import asyncio
import os
import shlex
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

import httpx
from loguru import logger

from src.config import (
    CHROME_AUTO_CLOSE,
    CHROME_BINARY,
    CHROME_EXTRA_ARGS,
    CHROME_HEADLESS,
    CHROME_MANAGE_PROCESS,
    CHROME_REMOTE_HOST,
    CHROME_REMOTE_PORT,
    CHROME_REMOTE_URL,
    CHROME_STARTUP_TIMEOUT,
    CHROME_USER_AGENT,
    CHROME_USER_DATA_DIR,
)

PROFILE_LOCKS = ("SingletonLock", "SingletonCookie", "SingletonSocket")


class BrowserGuard:
    """Launches Chrome if the remote debugging endpoint is unavailable."""

    def __init__(
        self,
        *,
        binary: str | None = None,
        auto_close: bool | None = None,
        headless: bool | None = None,
        manage_process: bool | None = None,
        user_data_dir: Optional[Path] = None,
    ) -> None:
        self.binary = binary or CHROME_BINARY
        self.auto_close = CHROME_AUTO_CLOSE if auto_close is None else auto_close
        self.headless = CHROME_HEADLESS if headless is None else headless
        self.manage_process = CHROME_MANAGE_PROCESS if manage_process is None else manage_process
        self.user_data_dir = Path(user_data_dir or CHROME_USER_DATA_DIR)
        self.extra_args = self._parse_extra_args(CHROME_EXTRA_ARGS)
        self._proc: asyncio.subprocess.Process | None = None
        self._launch_lock = asyncio.Lock()

    @staticmethod
    def _parse_extra_args(raw: str) -> List[str]:
        if not raw:
            return []
        return [part for part in shlex.split(raw, posix=os.name != "nt") if part]

    async def _devtools_alive(self) -> bool:
        url = f"{CHROME_REMOTE_URL}/json/version"
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                resp = await client.get(url, timeout=2)
            resp.raise_for_status()
            return True
        except httpx.HTTPError:
            return False

    async def _wait_until_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + CHROME_STARTUP_TIMEOUT
        while loop.time() < deadline:
            if await self._devtools_alive():
                return
            if self._proc and self._proc.returncode is not None:
                raise RuntimeError(f"Chrome exited during startup with code {self._proc.returncode}")
            await asyncio.sleep(0.4)
        raise RuntimeError("Chrome DevTools endpoint did not come up in time, check the Chrome configuration")

    def build_args(self) -> List[str]:
        args = [
            self.binary,
            f"--remote-debugging-port={CHROME_REMOTE_PORT}",
            f"--remote-debugging-address={CHROME_REMOTE_HOST}",
            f"--user-data-dir={self.user_data_dir}",
            f"--user-agent={CHROME_USER_AGENT}",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-blink-features=AutomationControlled",
        ]
        if self.headless:
            args.append("--headless=new")
            args.append("--window-size=1280,900")
        args.extend(self.extra_args)
        return args

    async def _launch(self) -> None:
        self._cleanup_profile()
        args = self.build_args()

        logger.info("Launching managed Chrome instance: {}", " ".join(args))
        self.user_data_dir.mkdir(parents=True, exist_ok=True)
        stderr_path = self.user_data_dir / "chrome_stderr.log"
        with stderr_path.open("wb") as stderr:
            self._proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=stderr,
            )

    def _cleanup_profile(self) -> None:
        """Remove stale singleton locks left behind by a crashed Chrome."""
        for name in PROFILE_LOCKS:
            target = self.user_data_dir / name
            try:
                if not target.exists() and not target.is_symlink():
                    continue
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target, ignore_errors=True)
                else:
                    target.unlink(missing_ok=True)
                logger.info(f"Removed stale lock file: {target}")
            except OSError as exc:
                logger.warning(f"Could not remove {target}: {exc}. Chrome might fail to start.")

    async def ensure(self) -> bool:
        """Ensure Chrome DevTools endpoint is reachable. Returns True if launched now."""
        async with self._launch_lock:
            if await self._devtools_alive():
                return False
            if not self.manage_process:
                raise RuntimeError(
                    "Chrome DevTools endpoint unavailable. Start Chrome with "
                    f"--remote-debugging-port={CHROME_REMOTE_PORT} or enable CHROME_MANAGE_PROCESS."
                )
            await self._launch()
            await self._wait_until_ready()
            return True

    async def shutdown(self) -> None:
        if self._proc is None:
            return
        logger.info("Shutting down managed Chrome instance")
        try:
            self._proc.terminate()
            await asyncio.wait_for(self._proc.wait(), timeout=3)
        except (asyncio.TimeoutError, ProcessLookupError):
            logger.warning("Chrome did not exit gracefully, forcing kill.")
            try:
                self._proc.kill()
                await asyncio.wait_for(self._proc.wait(), timeout=2)
            except (asyncio.TimeoutError, ProcessLookupError) as e:
                logger.error(f"Failed to kill Chrome process: {e}")
        finally:
            self._proc = None

    @asynccontextmanager
    async def lifecycle(self):
        started = await self.ensure()
        try:
            yield started
        finally:
            if started and self.auto_close:
                await self.shutdown()


__all__ = ["BrowserGuard"]
