"""Tests for config.py and policy.py - Configuration loading and validation."""
import json
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import AppConfig, ExecutorConfig, LoggingConfig, ResolverConfig, SecurityConfig
from policy import load_policy

REPO_POLICY = Path(__file__).parent.parent / "policy.json"


def _config(**overrides):
    values = dict(
        policy_path=REPO_POLICY,
        resolver=ResolverConfig(),
        security=SecurityConfig(jwt_secret="a-real-secret-value-for-production-use"),
        executor=ExecutorConfig(),
        logging=LoggingConfig(),
        environment="production",
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.mark.unit
class TestFromEnv:
    """Test environment-driven defaults and overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("EXECUTOR_MAX_ATTEMPTS", "EXECUTOR_RETRY_DELAY", "NAVIGATION_TIMEOUT", "SESSION_TTL_HOURS"):
            monkeypatch.delenv(name, raising=False)
        executor = ExecutorConfig.from_env()
        assert executor.max_attempts == 3
        assert executor.retry_delay == 1.0
        assert executor.navigation_timeout == 30.0
        assert executor.response_time_threshold_ms == 2000
        security = SecurityConfig.from_env()
        assert security.session_ttl_hours == 24.0
        assert security.cleanup_interval_seconds == 3600.0

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("AMBIGUOUS_CONFIDENCE", "0.4")
        monkeypatch.setenv("EXECUTOR_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("BROWSER_HEADLESS", "false")
        monkeypatch.setenv("OPCTL_ADMIN_USERNAME", "admin")
        assert ResolverConfig.from_env().ambiguous_confidence == 0.4
        executor = ExecutorConfig.from_env()
        assert executor.max_attempts == 5
        assert executor.browser_headless is False
        assert SecurityConfig.from_env().admin_username == "admin"


@pytest.mark.unit
class TestValidate:
    """Test AppConfig.validate."""

    def test_valid(self):
        _config().validate()

    def test_missing_policy(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            _config(policy_path=tmp_path / "missing.json").validate()

    def test_default_secret_rejected_in_production(self):
        with pytest.raises(ValueError, match="JWT_SECRET"):
            _config(security=SecurityConfig()).validate()
        _config(security=SecurityConfig(), environment="development").validate()

    @pytest.mark.parametrize(
        "override",
        [
            {"resolver": ResolverConfig(ambiguous_confidence=1.5)},
            {"executor": ExecutorConfig(max_attempts=0)},
            {"executor": ExecutorConfig(retry_delay=-1)},
            {"security": SecurityConfig(jwt_secret="x" * 40, session_ttl_hours=0)},
        ],
    )
    def test_out_of_range(self, override):
        with pytest.raises(ValueError):
            _config(**override).validate()


@pytest.mark.unit
class TestLoadPolicy:
    """Test policy loading."""

    def test_repository_policy(self):
        policy = load_policy(REPO_POLICY)
        assert set(policy["roles"]) == {"viewer", "operator", "sysadmin"}

    def test_missing_keys(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"roles": {}}))
        with pytest.raises(ValueError, match="principals"):
            load_policy(path)

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text("{not json")
        with pytest.raises(json.JSONDecodeError):
            load_policy(path)
