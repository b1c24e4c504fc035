"""Pytest configuration and shared fixtures."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

TEST_SECRET = "test-secret-with-enough-bytes-for-hs256-signing"


class RecordingAuditSink:
    """Audit sink that keeps events in memory instead of writing log files."""

    def __init__(self):
        self.events = []
        self.records = []

    def log_security_event(self, event):
        self.events.append(event)

    def log_audit(self, record):
        self.records.append(record)

    def event_types(self):
        return [event.type for event in self.events]


class FakeClock:
    """Manually advanced clock for session expiry tests."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def security_config():
    from config import SecurityConfig

    return SecurityConfig(jwt_secret=TEST_SECRET, session_ttl_hours=24)


@pytest.fixture
def sample_policy() -> Dict[str, Any]:
    """Policy with one principal per role; passwords equal the usernames."""
    from authorizer import hash_password

    def entry(username, roles, **extra):
        return {"password_hash": hash_password(username, rounds=4), "roles": roles, **extra}

    return {
        "roles": {
            "viewer": ["FileRead", "WebAccess"],
            "operator": ["FileRead", "FileWrite", "WebAccess", "AppControl"],
            "sysadmin": ["FileRead", "FileWrite", "WebAccess", "AppControl", "SystemSettings", "CommandExec"],
        },
        "principals": {
            "alice": entry("alice", ["operator"], id="principal-alice"),
            "victor": entry("victor", ["viewer"], id="principal-victor"),
            "root": entry("root", ["sysadmin"], id="principal-root"),
            "reader": entry("reader", [], capabilities=["FileRead"], id="principal-reader"),
        },
    }


@pytest.fixture
def principal_store(sample_policy):
    from authorizer import PrincipalStore

    return PrincipalStore.from_policy(sample_policy)


@pytest.fixture
def authorizer(principal_store, security_config, audit_sink, clock):
    from authorizer import Authorizer

    return Authorizer(principal_store, security_config, audit_sink=audit_sink, clock=clock)


@pytest.fixture
def mock_backends():
    """ToolBackends whose async calls are AsyncMocks reporting success."""
    from backends import BackendResult, SettingsBackend, ToolBackends

    file_backend = MagicMock()
    for name in ("read", "write", "delete", "list", "search", "move", "copy"):
        setattr(file_backend, name, AsyncMock(return_value=BackendResult.ok({"action": name})))
    file_backend.exists.return_value = False
    file_backend.snapshot.return_value = None
    file_backend.close = AsyncMock()

    browser = MagicMock()
    for name in ("navigate", "click", "type_text", "screenshot"):
        setattr(browser, name, AsyncMock(return_value=BackendResult.ok({"action": name})))
    browser.close = AsyncMock()

    process = MagicMock()
    process.launch = AsyncMock(return_value=BackendResult.ok({"pid": 4242}))
    process.close_app = AsyncMock(return_value=BackendResult.ok({"pids": [4242]}))
    process.terminate = AsyncMock(return_value=BackendResult.ok({"pid": 4242}))
    process.close = AsyncMock()

    command = MagicMock()
    command.run = AsyncMock(return_value=BackendResult.ok({"returncode": 0, "stdout": "", "stderr": ""}))
    command.close = AsyncMock()

    settings = MagicMock(spec=SettingsBackend)
    real_settings = SettingsBackend()
    settings.is_supported.side_effect = real_settings.is_supported
    settings.is_writable.side_effect = real_settings.is_writable
    settings.get = AsyncMock(return_value=BackendResult.ok({"value": "old"}))
    settings.set = AsyncMock(return_value=BackendResult.ok({"value": "new"}))
    settings.close = AsyncMock()

    return ToolBackends(file=file_backend, browser=browser, process=process, command=command, settings=settings)


@pytest.fixture
def fast_retry():
    from executor import RetryPolicy

    return RetryPolicy(max_attempts=3, delay=0)


@pytest.fixture
def executor(mock_backends, fast_retry):
    from executor import OperationExecutor

    return OperationExecutor(mock_backends, retry_policy=fast_retry)
