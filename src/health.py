"""Health check utilities for monitoring system status."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

from logging_utils import LOG_DIR, logger

MIN_FREE_GB = 1.0
MIN_FREE_PERCENT = 10.0
MAX_MEMORY_PERCENT = 95.0


@dataclass
class HealthCheck:
    """Individual health check result."""

    name: str
    healthy: bool
    message: str
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Overall health status of the system."""

    healthy: bool
    checks: Dict[str, HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "checks": {
                name: {
                    "healthy": check.healthy,
                    "message": check.message,
                    "latency_ms": check.latency_ms,
                    "metadata": check.metadata,
                }
                for name, check in self.checks.items()
            },
        }


def _elapsed(start: float) -> int:
    return int((time.time() - start) * 1000)


def check_policy_file(path: Optional[Path] = None) -> HealthCheck:
    """Check that the policy file loads and every principal expands to known capabilities."""
    start = time.time()

    try:
        from authorizer import PrincipalStore
        from policy import POLICY_PATH, load_policy

        path = path or POLICY_PATH
        if not path.exists():
            return HealthCheck(
                name="policy_file",
                healthy=False,
                message=f"Policy file not found: {path}",
                latency_ms=_elapsed(start),
            )

        policy = load_policy(path)
        principals = PrincipalStore.from_policy(policy)

        return HealthCheck(
            name="policy_file",
            healthy=True,
            message="Policy file loaded successfully",
            latency_ms=_elapsed(start),
            metadata={"roles_count": len(policy["roles"]), "principals_count": len(principals)},
        )

    except Exception as e:
        return HealthCheck(
            name="policy_file",
            healthy=False,
            message=f"Error loading policy: {str(e)}",
            latency_ms=_elapsed(start),
        )


def check_logging() -> HealthCheck:
    """Check if logging system is functional."""
    start = time.time()

    try:
        logger.info("Health check test log", extra={"extra": {"test": True}})

        return HealthCheck(
            name="logging",
            healthy=True,
            message="Logging system is functional",
            latency_ms=_elapsed(start),
        )

    except Exception as e:
        return HealthCheck(
            name="logging",
            healthy=False,
            message=f"Logging error: {str(e)}",
            latency_ms=_elapsed(start),
        )


def check_disk_space(path: Path = LOG_DIR) -> HealthCheck:
    """Check if there's sufficient disk space for logs and audit trails."""
    start = time.time()

    try:
        usage = psutil.disk_usage(str(path))
        free_gb = usage.free / (1024**3)
        total_gb = usage.total / (1024**3)
        percent_free = 100.0 - usage.percent
        metadata = {"free_gb": round(free_gb, 2), "total_gb": round(total_gb, 2)}

        if free_gb < MIN_FREE_GB or percent_free < MIN_FREE_PERCENT:
            return HealthCheck(
                name="disk_space",
                healthy=False,
                message=f"Low disk space: {free_gb:.2f}GB free ({percent_free:.1f}%)",
                latency_ms=_elapsed(start),
                metadata=metadata,
            )

        return HealthCheck(
            name="disk_space",
            healthy=True,
            message=f"Sufficient disk space: {free_gb:.2f}GB free",
            latency_ms=_elapsed(start),
            metadata=metadata,
        )

    except Exception as e:
        return HealthCheck(
            name="disk_space",
            healthy=False,
            message=f"Disk space check error: {str(e)}",
            latency_ms=_elapsed(start),
        )


def check_system_state(executor=None) -> HealthCheck:
    """Report the executor's resource snapshot; unhealthy only under memory pressure."""
    start = time.time()

    try:
        if executor is None:
            from executor import OperationExecutor

            executor = OperationExecutor()
        state = executor.get_system_state()
        metadata = state.to_dict()

        if state.resources.memory >= MAX_MEMORY_PERCENT:
            return HealthCheck(
                name="system_state",
                healthy=False,
                message=f"Memory pressure: {state.resources.memory:.1f}% used",
                latency_ms=_elapsed(start),
                metadata=metadata,
            )

        return HealthCheck(
            name="system_state",
            healthy=True,
            message=f"{state.active_operations} active, {state.queued_operations} queued",
            latency_ms=_elapsed(start),
            metadata=metadata,
        )

    except Exception as e:
        return HealthCheck(
            name="system_state",
            healthy=False,
            message=f"System state error: {str(e)}",
            latency_ms=_elapsed(start),
        )


def get_health_status(executor=None) -> HealthStatus:
    """
    Get overall system health status.

    Args:
        executor: Executor whose state to report (a fresh one when omitted)

    Returns:
        HealthStatus with all check results
    """
    checks: Dict[str, HealthCheck] = {
        "policy_file": check_policy_file(),
        "logging": check_logging(),
        "disk_space": check_disk_space(),
        "system_state": check_system_state(executor),
    }

    overall_healthy = all(check.healthy for check in checks.values())

    return HealthStatus(healthy=overall_healthy, checks=checks)


def health_check_cli(executor=None) -> int:
    """
    CLI command for health checks.

    Returns:
        0 if healthy, 1 if unhealthy
    """
    import json

    status = get_health_status(executor)

    print(json.dumps(status.to_dict(), indent=2, default=str))

    return 0 if status.healthy else 1


if __name__ == "__main__":
    exit(health_check_cli())
