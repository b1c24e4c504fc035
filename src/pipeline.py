"""Caller-driven orchestration: text -> resolve -> authorize -> execute."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from authorizer import AuthError, Authorizer, PrincipalStore, SessionSweeper, required_capabilities
from backends import ToolBackends
from command_resolver import CommandResolver, describe_resolution
from config import AppConfig, config
from executor import OperationExecutor, RetryPolicy
from logging_utils import AuditSink, logger
from metrics import PipelineMetrics
from models import (
    Ambiguous,
    ErrorCode,
    NeedsClarification,
    Operation,
    Principal,
    Resolution,
    utcnow,
)
from policy import load_policy

REJECTED = "Rejected"
NEEDS_CLARIFICATION = "NeedsClarification"
AMBIGUOUS = "Ambiguous"


@dataclass
class PipelineResult:
    """Outcome of one free-text command."""

    status: str
    resolution: Optional[Resolution] = None
    operation: Optional[Operation] = None
    error_code: Optional[ErrorCode] = None
    message: Optional[str] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def alternatives(self) -> List[Operation]:
        if isinstance(self.resolution, Ambiguous):
            return self.resolution.alternatives
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "resolution": describe_resolution(self.resolution) if self.resolution is not None else None,
            "operation": self.operation.to_dict() if self.operation else None,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
            "metrics": self.metrics,
        }


class CommandPipeline:
    """Wires the resolver, authorizer and executor together for one caller."""

    def __init__(
        self,
        resolver: CommandResolver,
        authorizer: Authorizer,
        executor: OperationExecutor,
        sweeper: Optional[SessionSweeper] = None,
    ) -> None:
        self.resolver = resolver
        self.authorizer = authorizer
        self.executor = executor
        self.sweeper = sweeper

    async def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()

    async def close(self) -> None:
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.executor.shutdown()

    async def process_command(self, text: str, session_id: str) -> PipelineResult:
        """
        Run ``text`` through the pipeline on behalf of the session's principal.

        Clarification and ambiguity are returned to the caller, never raised;
        nothing is executed unless exactly one Operation was resolved.
        """
        metrics = PipelineMetrics()
        logger.info(
            "Processing command",
            extra={"extra": {"correlation_id": metrics.correlation_id, "session_id": session_id, "raw_text": text[:200]}},
        )

        try:
            principal = self.authorizer.principal_for(session_id)
        except AuthError as exc:
            metrics.session_valid = False
            return self._finish(PipelineResult(status=REJECTED, error_code=exc.code, message=exc.message), metrics)
        metrics.session_valid = True

        resolution = self.resolver.resolve(text, {"principal_id": principal.id}, metrics)
        if isinstance(resolution, NeedsClarification):
            result = PipelineResult(
                status=NEEDS_CLARIFICATION,
                resolution=resolution,
                error_code=ErrorCode.RESOLUTION_EMPTY,
                message=resolution.question,
            )
        elif isinstance(resolution, Ambiguous):
            result = PipelineResult(
                status=AMBIGUOUS,
                resolution=resolution,
                error_code=ErrorCode.RESOLUTION_AMBIGUOUS,
                message=resolution.question,
            )
        else:
            operation = await self.run_operation(resolution.operation, principal, metrics)
            result = PipelineResult(
                status=operation.status.value,
                resolution=resolution,
                operation=operation,
                error_code=operation.error.code if operation.error else None,
                message=operation.error.message if operation.error else None,
            )
        return self._finish(result, metrics)

    async def run_operation(
        self, operation: Operation, principal: Principal, metrics: Optional[PipelineMetrics] = None
    ) -> Operation:
        """Authorize then execute; a denied Operation fails without reaching the executor."""
        if operation.context.principal_id is None:
            operation.context.principal_id = principal.id

        if not self.authorizer.authorize(operation, principal, metrics):
            required = sorted(c.value for c in required_capabilities(operation.type))
            operation.fail(
                ErrorCode.UNAUTHORIZED,
                f"Principal is not permitted to perform {operation.type.value} operations",
                {"required_capabilities": required},
            )
            if metrics:
                metrics.final_status = operation.status.value
                metrics.error_code = ErrorCode.UNAUTHORIZED.value
            return operation

        return await self.executor.execute_operation(operation, metrics)

    def _finish(self, result: PipelineResult, metrics: PipelineMetrics) -> PipelineResult:
        result.metrics = metrics.finalize()
        logger.info(
            "Final decision",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id,
                    "status": result.status,
                    "error_code": result.error_code.value if result.error_code else None,
                    "operation_id": result.operation.id if result.operation else None,
                    "metrics": result.metrics,
                }
            },
        )
        return result


def build_pipeline(
    app_config: Optional[AppConfig] = None,
    policy: Optional[Dict[str, Any]] = None,
    backends: Optional[ToolBackends] = None,
    audit_sink: Optional[AuditSink] = None,
    retry_policy: Optional[RetryPolicy] = None,
    clock=utcnow,
) -> CommandPipeline:
    """Assemble a pipeline from configuration and the loaded policy."""
    app_config = app_config or config
    if policy is None:
        policy = load_policy(app_config.policy_path)

    principals = PrincipalStore.from_policy(policy, app_config.security)
    authorizer = Authorizer(principals, app_config.security, audit_sink=audit_sink, clock=clock)
    executor = OperationExecutor(backends, retry_policy=retry_policy, config=app_config.executor)
    resolver = CommandResolver(config=app_config.resolver)
    sweeper = SessionSweeper(authorizer, app_config.security.cleanup_interval_seconds)

    logger.info(
        "Pipeline assembled",
        extra={"extra": {"principals": len(principals), "templates": len(resolver.templates), "environment": app_config.environment}},
    )
    return CommandPipeline(resolver, authorizer, executor, sweeper)
