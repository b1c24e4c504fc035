"""Operation executor: validation, dispatch with bounded retry, and rollback."""
from __future__ import annotations

import asyncio
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar
from urllib.parse import urlparse

import psutil

from backends import BackendResult, BrowserBackend, CommandBackend, FileBackend, ToolBackends
from config import ExecutorConfig
from logging_utils import logger
from metrics import PipelineMetrics
from models import (
    AppAction,
    ErrorCode,
    FileAction,
    Operation,
    OperationStatus,
    OperationType,
    ResourceUsage,
    SettingsAction,
    SystemState,
    ValidationResult,
    WebAction,
    params_match_type,
)

T = TypeVar("T")
Journal = Dict[str, Any]
Validator = Callable[[Operation, ToolBackends], ValidationResult]
Dispatcher = Callable[[Operation, ToolBackends, Journal], Awaitable[Dict[str, Any]]]
RollbackHook = Callable[[Operation, ToolBackends, Journal], Awaitable[None]]


class BackendError(Exception):
    """A backend call failed (after retries, when retried)."""


class RollbackError(Exception):
    """A rollback hook ran and could not undo the operation's effects."""


def _unwrap(result: BackendResult) -> Dict[str, Any]:
    if not result.success:
        raise BackendError(result.error or "backend call failed")
    if isinstance(result.data, dict):
        return result.data
    return {"data": result.data}


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed number of attempts with a fixed delay between them; no backoff."""

    max_attempts: int = 3
    delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")

    async def run(self, call: Callable[[int], Awaitable[T]], label: str = "") -> T:
        """Await ``call(attempt)`` until it succeeds; re-raise the last error when attempts run out."""
        attempt = 1
        while True:
            try:
                return await call(attempt)
            except Exception as exc:
                logger.warning(
                    "Attempt failed",
                    extra={"extra": {"label": label, "attempt": attempt, "max_attempts": self.max_attempts, "error": str(exc)}},
                )
                if attempt >= self.max_attempts:
                    raise
            if self.delay:
                await asyncio.sleep(self.delay)
            attempt += 1


SINGLE_ATTEMPT = RetryPolicy(max_attempts=1, delay=0)


@dataclass
class OperationHandler:
    """Validator, dispatcher and optional rollback hook for one operation type."""

    validator: Validator
    dispatcher: Dispatcher
    rollback: Optional[RollbackHook] = None
    retry: bool = True
    serialized: bool = False


# --- validators -----------------------------------------------------------


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_file(op: Operation, backends: ToolBackends) -> ValidationResult:
    p = op.params
    if _blank(p.path):
        return ValidationResult.reject("File path is required")
    if "\x00" in p.path:
        return ValidationResult.reject("File path contains a null byte")
    if p.action is FileAction.WRITE and _blank(p.content):
        return ValidationResult.reject("Content is required for write")
    if p.action in (FileAction.MOVE, FileAction.COPY) and _blank(p.destination):
        return ValidationResult.reject(f"Destination is required for {p.action.value.lower()}")
    if p.action is FileAction.SEARCH:
        if _blank(p.pattern):
            return ValidationResult.reject("Search pattern is required")
        try:
            re.compile(p.pattern)
        except re.error as exc:
            return ValidationResult.reject(f"Invalid search pattern: {exc}")
    return ValidationResult.ok()


def validate_web(op: Operation, backends: ToolBackends) -> ValidationResult:
    p = op.params
    if p.action is WebAction.NAVIGATE:
        parsed = urlparse(p.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ValidationResult.reject("An http(s) URL is required for navigation")
    elif p.action is WebAction.CLICK:
        has_coordinates = p.x is not None and p.y is not None
        if _blank(p.selector) and not has_coordinates:
            return ValidationResult.reject("A selector or both coordinates are required for click")
    elif p.action is WebAction.TYPE:
        if _blank(p.selector) or _blank(p.text):
            return ValidationResult.reject("Selector and text are required for typing")
    return ValidationResult.ok()


def validate_app(op: Operation, backends: ToolBackends) -> ValidationResult:
    if _blank(op.params.app_name):
        return ValidationResult.reject("Application name is required")
    return ValidationResult.ok()


def validate_settings(op: Operation, backends: ToolBackends) -> ValidationResult:
    p = op.params
    if _blank(p.setting):
        return ValidationResult.reject("Setting name is required")
    if not backends.settings.is_supported(p.setting):
        return ValidationResult.reject(f"Unsupported system setting: {p.setting}")
    if p.action is SettingsAction.SET:
        if p.value is None:
            return ValidationResult.reject("A value is required to change a setting")
        if not backends.settings.is_writable(p.setting):
            return ValidationResult.reject(f"System setting is read-only: {p.setting}")
    return ValidationResult.ok()


def validate_command(op: Operation, backends: ToolBackends) -> ValidationResult:
    command = op.params.command
    if not isinstance(command, str) or not command.strip():
        return ValidationResult.reject("Command is required")
    if "\x00" in command:
        return ValidationResult.reject("Command contains a null byte")
    return ValidationResult.ok()


# --- dispatchers and rollback hooks ---------------------------------------


async def dispatch_file(op: Operation, backends: ToolBackends, journal: Journal) -> Dict[str, Any]:
    p, files = op.params, backends.file
    if p.action is FileAction.READ:
        return _unwrap(await files.read(p.path))
    if p.action is FileAction.WRITE:
        if "existed" not in journal:
            journal["existed"] = files.exists(p.path)
            journal["previous"] = files.snapshot(p.path)
        journal["touched"] = True
        return _unwrap(await files.write(p.path, p.content))
    if p.action is FileAction.DELETE:
        if "previous" not in journal:
            journal["previous"] = files.snapshot(p.path)
        data = _unwrap(await files.delete(p.path))
        journal["deleted"] = True
        return data
    if p.action is FileAction.LIST:
        return _unwrap(await files.list(p.path, recursive=p.recursive))
    if p.action is FileAction.SEARCH:
        return _unwrap(await files.search(p.path, p.pattern, recursive=p.recursive))
    if p.action is FileAction.MOVE:
        data = _unwrap(await files.move(p.path, p.destination))
        journal["moved"] = True
        return data
    if p.action is FileAction.COPY:
        if "destination_existed" not in journal:
            journal["destination_existed"] = files.exists(p.destination)
        data = _unwrap(await files.copy(p.path, p.destination))
        journal["copied"] = True
        return data
    raise BackendError(f"Unsupported file action: {p.action}")


async def rollback_file(op: Operation, backends: ToolBackends, journal: Journal) -> None:
    p, files = op.params, backends.file
    previous = journal.get("previous")
    if p.action is FileAction.WRITE and journal.get("touched"):
        if journal.get("existed") and previous is not None:
            _unwrap(await files.write(p.path, previous))
        elif not journal.get("existed") and files.exists(p.path):
            _unwrap(await files.delete(p.path))
    elif p.action is FileAction.DELETE and journal.get("deleted") and previous is not None:
        _unwrap(await files.write(p.path, previous))
    elif p.action is FileAction.MOVE and journal.get("moved"):
        _unwrap(await files.move(p.destination, p.path))
    elif p.action is FileAction.COPY and journal.get("copied") and not journal.get("destination_existed"):
        _unwrap(await files.delete(p.destination))


async def dispatch_web(op: Operation, backends: ToolBackends, journal: Journal) -> Dict[str, Any]:
    p, browser = op.params, backends.browser
    journal["browser_used"] = True
    if p.action is WebAction.NAVIGATE:
        return _unwrap(await browser.navigate(p.url))
    if p.action is WebAction.CLICK:
        return _unwrap(await browser.click(selector=p.selector, x=p.x, y=p.y))
    if p.action is WebAction.TYPE:
        return _unwrap(await browser.type_text(p.selector, p.text))
    if p.action is WebAction.SCREENSHOT:
        return _unwrap(await browser.screenshot(p.path))
    raise BackendError(f"Unsupported web action: {p.action}")


async def rollback_web(op: Operation, backends: ToolBackends, journal: Journal) -> None:
    # A half-driven page cannot be trusted by the next operation.
    await backends.browser.close()


async def dispatch_app(op: Operation, backends: ToolBackends, journal: Journal) -> Dict[str, Any]:
    p = op.params
    if p.action is AppAction.LAUNCH:
        data = _unwrap(await backends.process.launch(p.app_name, p.args))
        journal["pid"] = data.get("pid")
        return data
    if p.action is AppAction.CLOSE:
        return _unwrap(await backends.process.close_app(p.app_name))
    raise BackendError(f"Unsupported app action: {p.action}")


async def rollback_app(op: Operation, backends: ToolBackends, journal: Journal) -> None:
    pid = journal.get("pid")
    if pid is not None:
        _unwrap(await backends.process.terminate(pid))


async def dispatch_settings(op: Operation, backends: ToolBackends, journal: Journal) -> Dict[str, Any]:
    p, settings = op.params, backends.settings
    if p.action is SettingsAction.GET:
        return _unwrap(await settings.get(p.setting))
    if "previous" not in journal:
        journal["previous"] = _unwrap(await settings.get(p.setting)).get("value")
    journal["changed"] = True
    return _unwrap(await settings.set(p.setting, p.value))


async def rollback_settings(op: Operation, backends: ToolBackends, journal: Journal) -> None:
    if op.params.action is SettingsAction.SET and journal.get("changed"):
        _unwrap(await backends.settings.set(op.params.setting, journal.get("previous")))


async def dispatch_command(op: Operation, backends: ToolBackends, journal: Journal) -> Dict[str, Any]:
    p = op.params
    return _unwrap(await backends.command.run(p.command, cwd=p.cwd, env=p.env, timeout=p.timeout))


def default_handlers() -> Dict[OperationType, OperationHandler]:
    return {
        OperationType.FILE_OP: OperationHandler(validate_file, dispatch_file, rollback_file),
        OperationType.WEB_NAV: OperationHandler(validate_web, dispatch_web, rollback_web, serialized=True),
        OperationType.APP_CONTROL: OperationHandler(validate_app, dispatch_app, rollback_app, retry=False),
        OperationType.SYSTEM_SETTINGS: OperationHandler(validate_settings, dispatch_settings, rollback_settings),
        OperationType.COMMAND_EXEC: OperationHandler(validate_command, dispatch_command, None, retry=False),
    }


class OperationExecutor:
    """The only component allowed to produce real side effects."""

    def __init__(
        self,
        backends: Optional[ToolBackends] = None,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[ExecutorConfig] = None,
        handlers: Optional[Dict[OperationType, OperationHandler]] = None,
    ) -> None:
        self.config = config or ExecutorConfig()
        self.backends = backends or ToolBackends(
            file=FileBackend(self.config.file_root),
            browser=BrowserBackend(self.config.browser_headless, self.config.navigation_timeout),
            command=CommandBackend(self.config.command_timeout),
        )
        self.retry_policy = retry_policy or RetryPolicy(self.config.max_attempts, self.config.retry_delay)
        self.handlers = default_handlers() if handlers is None else dict(handlers)
        self._active: Dict[str, Operation] = {}
        self._serial_lock = asyncio.Lock()
        self._waiting = 0

    def register_handler(self, operation_type: OperationType, handler: OperationHandler) -> None:
        self.handlers[operation_type] = handler

    def validate_operation(self, operation: Operation) -> ValidationResult:
        if not params_match_type(operation):
            return ValidationResult.reject(
                f"Params {type(operation.params).__name__} do not match operation type {operation.type.value}"
            )
        handler = self.handlers.get(operation.type)
        if handler is None:
            return ValidationResult.reject(f"Unsupported operation type: {operation.type.value}")
        return handler.validator(operation, self.backends)

    async def execute_operation(self, operation: Operation, metrics: Optional[PipelineMetrics] = None) -> Operation:
        """
        Drive ``operation`` from Pending to a terminal status.

        Backend failures never escape; they end in Failed or RolledBack with
        the dispatch error retained.
        """
        start = time.time()
        correlation_id = metrics.correlation_id if metrics else None
        log_extra = {"correlation_id": correlation_id, "operation_id": operation.id, "type": operation.type.value}
        logger.info("Starting operation execution", extra={"extra": log_extra})

        operation.transition(OperationStatus.VALIDATING)
        validation = self.validate_operation(operation)
        if not validation.valid:
            operation.fail(ErrorCode.VALIDATION_ERROR, validation.errors[0], {"errors": validation.errors})
            logger.warning("Validation failed", extra={"extra": {**log_extra, "errors": validation.errors}})
        else:
            operation.transition(OperationStatus.APPROVED)
            operation.transition(OperationStatus.EXECUTING)
            handler = self.handlers[operation.type]
            journal: Journal = {}
            self._active[operation.id] = operation
            try:
                # Rollback of a serialized handler must finish before the next operation gets the handle.
                async with self._exclusive(handler):
                    try:
                        result = await self._dispatch(operation, handler, journal)
                    except Exception as exc:
                        await self._handle_failure(operation, handler, journal, exc)
                    else:
                        operation.complete(result)
                        logger.info("Operation completed successfully", extra={"extra": {**log_extra, "attempts": operation.context.attempts}})
            finally:
                self._active.pop(operation.id, None)

        if metrics:
            metrics.dispatch_attempts = operation.context.attempts
            metrics.final_status = operation.status.value
            metrics.error_code = operation.error.code.value if operation.error else None
            metrics.rolled_back = operation.status is OperationStatus.ROLLED_BACK
            metrics.execute_latency_ms = int((time.time() - start) * 1000)
        return operation

    async def _dispatch(self, operation: Operation, handler: OperationHandler, journal: Journal) -> Dict[str, Any]:
        policy = self.retry_policy if handler.retry else SINGLE_ATTEMPT

        async def attempt(number: int) -> Dict[str, Any]:
            operation.context.attempts = number
            return await handler.dispatcher(operation, self.backends, journal)

        return await self._timed(operation, policy.run(attempt, label=operation.id))

    @asynccontextmanager
    async def _exclusive(self, handler: OperationHandler) -> AsyncIterator[None]:
        """Hold the shared handle lock for serialized handlers; a no-op otherwise."""
        if not handler.serialized:
            yield
            return
        self._waiting += 1
        try:
            await self._serial_lock.acquire()
        finally:
            self._waiting -= 1
        try:
            yield
        finally:
            self._serial_lock.release()

    async def _timed(self, operation: Operation, call: Awaitable[T]) -> T:
        start = time.time()
        try:
            return await call
        finally:
            elapsed_ms = int((time.time() - start) * 1000)
            if elapsed_ms > self.config.response_time_threshold_ms:
                logger.warning(
                    "Slow dispatch",
                    extra={"extra": {"operation_id": operation.id, "elapsed_ms": elapsed_ms, "threshold_ms": self.config.response_time_threshold_ms}},
                )

    async def _handle_failure(self, operation: Operation, handler: OperationHandler, journal: Journal, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        details: Dict[str, Any] = {"attempts": operation.context.attempts, "exception": type(exc).__name__}
        logger.error("Operation failed", extra={"extra": {"operation_id": operation.id, "error": message, **details}})

        rolled_back = False
        if handler.rollback is not None:
            try:
                rolled_back = await self.rollback_operation(operation, journal)
            except RollbackError as rollback_exc:
                details["rollback_code"] = ErrorCode.ROLLBACK_FAILED.value
                details["rollback_error"] = str(rollback_exc)

        operation.fail(ErrorCode.BACKEND_ERROR, message, details)
        if rolled_back:
            operation.transition(OperationStatus.ROLLED_BACK)

    async def rollback_operation(self, operation: Operation, journal: Optional[Journal] = None) -> bool:
        """
        Run the rollback hook for ``operation``.

        Returns False when the type has no hook; raises RollbackError when the hook fails.
        """
        handler = self.handlers.get(operation.type)
        if handler is None or handler.rollback is None:
            return False
        logger.info("Attempting operation rollback", extra={"extra": {"operation_id": operation.id}})
        try:
            await handler.rollback(operation, self.backends, journal if journal is not None else {})
        except Exception as exc:
            logger.error("Rollback failed", extra={"extra": {"operation_id": operation.id, "error": str(exc)}})
            raise RollbackError(str(exc) or type(exc).__name__) from exc
        logger.info("Rollback succeeded", extra={"extra": {"operation_id": operation.id}})
        return True

    def get_system_state(self) -> SystemState:
        """Read-only snapshot for observability; never consulted before executing."""
        return SystemState(
            resources=ResourceUsage(
                cpu=psutil.cpu_percent(interval=None),
                memory=psutil.virtual_memory().percent,
                disk=psutil.disk_usage(Path.cwd().anchor or "/").percent,
            ),
            active_operations=len(self._active),
            queued_operations=self._waiting,
        )

    async def shutdown(self) -> None:
        """Release backend handles; failures are logged, never raised."""
        await self.backends.close_all()
        logger.info("Executor shut down", extra={"extra": {"active_operations": len(self._active)}})
