"""Tool backends: the only code in opctl that touches files, browsers, processes and settings."""
from __future__ import annotations

import asyncio
import os
import platform
import re
import shutil
import socket
from abc import ABC
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from logging_utils import logger

READABLE_SETTINGS = ("hostname", "platform", "cpu_count", "memory_total", "disk_usage", "boot_time")
ENV_SETTING_PREFIX = "env."


@dataclass
class BackendResult:
    """Uniform outcome of a backend call."""

    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> BackendResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> BackendResult:
        return cls(success=False, error=error)


class ToolBackend(ABC):
    """Base class for side-effecting backends."""

    name: str = "backend"

    async def close(self) -> None:
        """Release long-lived handles; backends without any keep the default."""
        return None


class FileBackend(ToolBackend):
    """File storage rooted at a base directory; relative paths resolve against it."""

    name = "file"

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root or Path.cwd())

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.root / candidate

    async def read(self, path: str) -> BackendResult:
        try:
            content = await asyncio.to_thread(self.resolve(path).read_text, encoding="utf-8")
        except OSError as exc:
            return BackendResult.fail(f"Failed to read file: {exc}")
        return BackendResult.ok({"path": path, "content": content})

    async def write(self, path: str, content: str) -> BackendResult:
        target = self.resolve(path)
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_text, content, encoding="utf-8")
        except OSError as exc:
            return BackendResult.fail(f"Failed to write file: {exc}")
        return BackendResult.ok({"path": path, "bytes": len(content.encode("utf-8"))})

    async def delete(self, path: str) -> BackendResult:
        try:
            await asyncio.to_thread(self.resolve(path).unlink)
        except OSError as exc:
            return BackendResult.fail(f"Failed to delete file: {exc}")
        return BackendResult.ok({"path": path})

    @staticmethod
    def _walk(directory: Path, recursive: bool) -> Optional[List[Path]]:
        """Sorted regular files under ``directory``, or None when it is not a directory."""
        if not directory.is_dir():
            return None
        entries = directory.rglob("*") if recursive else directory.iterdir()
        return sorted(entry for entry in entries if entry.is_file())

    async def list(self, path: str, recursive: bool = False) -> BackendResult:
        try:
            entries = await asyncio.to_thread(self._walk, self.resolve(path), recursive)
        except OSError as exc:
            return BackendResult.fail(f"Failed to list files: {exc}")
        if entries is None:
            return BackendResult.fail(f"Failed to list files: not a directory: {path}")
        return BackendResult.ok({"path": path, "files": [str(entry) for entry in entries]})

    async def search(self, path: str, pattern: str, recursive: bool = True) -> BackendResult:
        regex = re.compile(pattern)
        try:
            entries = await asyncio.to_thread(self._walk, self.resolve(path), recursive)
        except OSError as exc:
            return BackendResult.fail(f"Failed to search files: {exc}")
        if entries is None:
            return BackendResult.fail(f"Failed to search files: not a directory: {path}")
        results: List[Dict[str, Any]] = []
        for entry in entries:
            try:
                content = await asyncio.to_thread(entry.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping unreadable file during search", extra={"extra": {"file": str(entry), "error": str(exc)}})
                continue
            found = regex.findall(content)
            if found:
                results.append({"file": str(entry), "matches": len(found)})
        return BackendResult.ok({"path": path, "pattern": pattern, "results": results})

    async def move(self, path: str, destination: str) -> BackendResult:
        try:
            await asyncio.to_thread(shutil.move, str(self.resolve(path)), str(self.resolve(destination)))
        except OSError as exc:
            return BackendResult.fail(f"Failed to move file: {exc}")
        return BackendResult.ok({"path": path, "destination": destination})

    async def copy(self, path: str, destination: str) -> BackendResult:
        try:
            await asyncio.to_thread(shutil.copy2, str(self.resolve(path)), str(self.resolve(destination)))
        except OSError as exc:
            return BackendResult.fail(f"Failed to copy file: {exc}")
        return BackendResult.ok({"path": path, "destination": destination})

    def exists(self, path: str) -> bool:
        return self.resolve(path).exists()

    def snapshot(self, path: str) -> Optional[str]:
        """Current text content of ``path``, or None when it does not exist or is not text."""
        target = self.resolve(path)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None


class BrowserBackend(ToolBackend):
    """Playwright-driven Chromium session. One handle, not safe for concurrent use."""

    name = "browser"

    def __init__(self, headless: bool = True, navigation_timeout: float = 30.0) -> None:
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self._playwright = None
        self._browser = None
        self._page = None

    @property
    def is_running(self) -> bool:
        return self._page is not None

    async def _ensure_page(self):
        if self._page is None:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._page = await self._browser.new_page(viewport={"width": 1280, "height": 800})
            logger.info("Browser launched", extra={"extra": {"headless": self.headless}})
        return self._page

    async def navigate(self, url: str, timeout: Optional[float] = None) -> BackendResult:
        page = await self._ensure_page()
        response = await page.goto(url, timeout=(timeout or self.navigation_timeout) * 1000)
        status = response.status if response else None
        if status is not None and status >= 400:
            return BackendResult.fail(f"Navigation to {url} returned HTTP {status}")
        return BackendResult.ok({"url": page.url, "status": status, "title": await page.title()})

    async def click(self, selector: Optional[str] = None, x: Optional[int] = None, y: Optional[int] = None) -> BackendResult:
        page = await self._ensure_page()
        if x is not None and y is not None:
            await page.mouse.click(x, y)
            return BackendResult.ok({"x": x, "y": y})
        await page.click(selector)
        return BackendResult.ok({"selector": selector})

    async def type_text(self, selector: str, text: str) -> BackendResult:
        page = await self._ensure_page()
        await page.fill(selector, text)
        return BackendResult.ok({"selector": selector, "length": len(text)})

    async def screenshot(self, path: Optional[str] = None) -> BackendResult:
        page = await self._ensure_page()
        image = await page.screenshot(path=path, full_page=True)
        return BackendResult.ok({"path": path, "bytes": len(image)})

    async def close(self) -> None:
        browser, playwright = self._browser, self._playwright
        self._page = self._browser = self._playwright = None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()


class ProcessBackend(ToolBackend):
    """Launches and terminates desktop applications."""

    name = "process"

    def __init__(self) -> None:
        # pid -> task awaiting the child's exit
        self._children: Dict[int, asyncio.Task] = {}

    async def launch(self, name: str, args: Optional[List[str]] = None) -> BackendResult:
        executable = shutil.which(name)
        if executable is None:
            return BackendResult.fail(f"Application not found: {name}")
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *(args or []),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            return BackendResult.fail(f"Failed to launch {name}: {exc}")
        reaper = asyncio.create_task(proc.wait())
        self._children[proc.pid] = reaper
        reaper.add_done_callback(lambda _task, pid=proc.pid: self._children.pop(pid, None))
        return BackendResult.ok({"app": name, "pid": proc.pid})

    async def close_app(self, name: str) -> BackendResult:
        lowered = name.lower()
        closed: List[int] = []
        for proc in psutil.process_iter(["pid", "name"]):
            proc_name = (proc.info.get("name") or "").lower()
            if proc_name in (lowered, f"{lowered}.exe"):
                try:
                    proc.terminate()
                    closed.append(proc.pid)
                except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                    logger.warning("Could not terminate process", extra={"extra": {"pid": proc.pid, "error": str(exc)}})
        if not closed:
            return BackendResult.fail(f"No running application named {name}")
        return BackendResult.ok({"app": name, "pids": closed})

    async def terminate(self, pid: int) -> BackendResult:
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return BackendResult.ok({"pid": pid, "already_exited": True})
        except psutil.AccessDenied as exc:
            return BackendResult.fail(f"Failed to terminate {pid}: {exc}")
        return BackendResult.ok({"pid": pid})

    async def close(self) -> None:
        """Stop waiting on launched applications; the applications keep running."""
        for reaper in list(self._children.values()):
            reaper.cancel()
        self._children.clear()


class CommandBackend(ToolBackend):
    """Runs shell commands as asyncio subprocesses."""

    name = "command"

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout

    async def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> BackendResult:
        logger.info("Running command", extra={"extra": {"command": command.split()[:1], "cwd": cwd}})
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env={**os.environ, **env} if env else None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout or self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return BackendResult.fail(f"Command timed out after {timeout or self.timeout} seconds")

        data = {
            "returncode": proc.returncode,
            "stdout": stdout.decode("utf-8", errors="replace"),
            "stderr": stderr.decode("utf-8", errors="replace"),
        }
        if proc.returncode != 0:
            return BackendResult(success=False, data=data, error=f"Command exited with status {proc.returncode}")
        return BackendResult.ok(data)


class SettingsBackend(ToolBackend):
    """Reads coarse system facts and process-level environment settings."""

    name = "settings"

    def is_supported(self, setting: str) -> bool:
        return setting in READABLE_SETTINGS or self.is_writable(setting)

    def is_writable(self, setting: str) -> bool:
        return setting.startswith(ENV_SETTING_PREFIX) and len(setting) > len(ENV_SETTING_PREFIX)

    async def get(self, setting: str) -> BackendResult:
        if self.is_writable(setting):
            return BackendResult.ok({"setting": setting, "value": os.environ.get(setting[len(ENV_SETTING_PREFIX):])})
        if setting == "hostname":
            value: Any = socket.gethostname()
        elif setting == "platform":
            value = platform.platform()
        elif setting == "cpu_count":
            value = psutil.cpu_count()
        elif setting == "memory_total":
            value = psutil.virtual_memory().total
        elif setting == "disk_usage":
            value = psutil.disk_usage(str(Path.cwd().anchor or "/")).percent
        elif setting == "boot_time":
            value = psutil.boot_time()
        else:
            return BackendResult.fail(f"Unknown system setting: {setting}")
        return BackendResult.ok({"setting": setting, "value": value})

    async def set(self, setting: str, value: Optional[str]) -> BackendResult:
        if not self.is_writable(setting):
            return BackendResult.fail(f"System setting is read-only: {setting}")
        name = setting[len(ENV_SETTING_PREFIX):]
        previous = os.environ.get(name)
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value
        return BackendResult.ok({"setting": setting, "value": value, "previous": previous})


@dataclass
class ToolBackends:
    """The set of backends an executor dispatches to."""

    file: FileBackend = field(default_factory=FileBackend)
    browser: BrowserBackend = field(default_factory=BrowserBackend)
    process: ProcessBackend = field(default_factory=ProcessBackend)
    command: CommandBackend = field(default_factory=CommandBackend)
    settings: SettingsBackend = field(default_factory=SettingsBackend)

    def all(self) -> List[ToolBackend]:
        return [self.file, self.browser, self.process, self.command, self.settings]

    async def close_all(self) -> None:
        """Release every backend; release errors are logged and never raised."""
        for backend in self.all():
            try:
                await backend.close()
            except Exception as exc:
                logger.error(
                    "Backend release failed",
                    extra={"extra": {"backend": getattr(backend, "name", repr(backend)), "error": str(exc)}},
                )
