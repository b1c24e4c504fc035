"""Tests for health.py - Health checks."""
import json
import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from health import (
    check_disk_space,
    check_logging,
    check_policy_file,
    check_system_state,
    get_health_status,
    health_check_cli,
)
from models import ResourceUsage, SystemState

REPO_POLICY = Path(__file__).parent.parent / "policy.json"


def _executor_with(memory):
    executor = MagicMock()
    executor.get_system_state.return_value = SystemState(
        resources=ResourceUsage(cpu=5.0, memory=memory, disk=40.0), active_operations=1, queued_operations=2
    )
    return executor


@pytest.mark.unit
class TestChecks:
    """Test individual health checks."""

    def test_repository_policy_is_healthy(self):
        check = check_policy_file(REPO_POLICY)
        assert check.healthy, check.message
        assert check.metadata["roles_count"] == 3

    def test_missing_policy(self, tmp_path):
        check = check_policy_file(tmp_path / "absent.json")
        assert not check.healthy
        assert "not found" in check.message

    def test_malformed_policy(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"roles": {}}))
        check = check_policy_file(path)
        assert not check.healthy
        assert "principals" in check.message

    def test_logging(self):
        assert check_logging().healthy

    def test_disk_space(self, tmp_path):
        check = check_disk_space(tmp_path)
        assert check.name == "disk_space"
        assert "free_gb" in check.metadata

    def test_system_state_reports_counts(self):
        check = check_system_state(_executor_with(memory=50.0))
        assert check.healthy
        assert check.metadata["queued_operations"] == 2
        assert check.message == "1 active, 2 queued"

    def test_memory_pressure(self):
        assert not check_system_state(_executor_with(memory=99.0)).healthy

    def test_system_state_error(self):
        executor = MagicMock()
        executor.get_system_state.side_effect = RuntimeError("psutil unavailable")
        check = check_system_state(executor)
        assert not check.healthy
        assert "psutil unavailable" in check.message


@pytest.mark.unit
class TestHealthStatus:
    """Test aggregation and CLI output."""

    def test_all_checks_present(self):
        status = get_health_status(_executor_with(memory=10.0))
        assert set(status.checks) == {"policy_file", "logging", "disk_space", "system_state"}
        assert status.healthy == all(c.healthy for c in status.checks.values())

    def test_unhealthy_check_fails_overall(self):
        assert get_health_status(_executor_with(memory=99.0)).healthy is False

    def test_cli_prints_json(self, capsys):
        code = health_check_cli(_executor_with(memory=99.0))
        assert code == 1
        data = json.loads(capsys.readouterr().out)
        assert data["checks"]["system_state"]["healthy"] is False
