"""Integration tests for end-to-end command processing."""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from backends import BackendResult
from config import AppConfig, ExecutorConfig, LoggingConfig, ResolverConfig
from models import ErrorCode, FileAction, OperationStatus, OperationType
from pipeline import AMBIGUOUS, NEEDS_CLARIFICATION, REJECTED, build_pipeline


@pytest.fixture
def app_config(security_config, tmp_path):
    return AppConfig(
        policy_path=tmp_path / "policy.json",
        resolver=ResolverConfig(),
        security=security_config,
        executor=ExecutorConfig(file_root=tmp_path),
        logging=LoggingConfig(log_dir=tmp_path / "logs"),
        environment="test",
    )


@pytest.fixture
def pipeline(app_config, sample_policy, mock_backends, audit_sink, fast_retry, clock):
    return build_pipeline(
        app_config,
        policy=sample_policy,
        backends=mock_backends,
        audit_sink=audit_sink,
        retry_policy=fast_retry,
        clock=clock,
    )


def login(pipeline, username):
    return pipeline.authorizer.authenticate(username, username).id


@pytest.mark.integration
class TestProcessCommand:
    """Test text -> resolve -> authorize -> execute."""

    @pytest.mark.asyncio
    async def test_read_file_completes(self, pipeline, mock_backends):
        mock_backends.file.read.return_value = BackendResult.ok({"content": "Hello"})
        result = await pipeline.process_command("read the file notes.txt", login(pipeline, "alice"))
        assert result.status == OperationStatus.COMPLETED.value
        assert result.operation.params.action is FileAction.READ
        assert result.operation.context.principal_id == "principal-alice"
        assert result.operation.context.result == {"content": "Hello"}
        assert result.error_code is None
        assert result.metrics["final_status"] == "Completed"
        assert result.metrics["total_latency_ms"] >= 0

    @pytest.mark.asyncio
    async def test_file_read_only_principal_cannot_write(self, pipeline, mock_backends, audit_sink):
        session_id = login(pipeline, "reader")
        result = await pipeline.process_command("create a file notes.txt with content Hello", session_id)
        assert result.status == OperationStatus.FAILED.value
        assert result.error_code is ErrorCode.UNAUTHORIZED
        assert result.operation.error.details["required_capabilities"] == ["FileRead", "FileWrite"]
        mock_backends.file.write.assert_not_awaited()
        assert [r.status for r in audit_sink.records] == ["FAILURE"]

    @pytest.mark.asyncio
    async def test_ambiguous_returns_alternatives(self, pipeline, mock_backends, audit_sink):
        result = await pipeline.process_command("open example.com", login(pipeline, "alice"))
        assert result.status == AMBIGUOUS
        assert result.error_code is ErrorCode.RESOLUTION_AMBIGUOUS
        assert [op.type for op in result.alternatives] == [OperationType.WEB_NAV, OperationType.APP_CONTROL]
        assert result.operation is None
        mock_backends.browser.navigate.assert_not_awaited()
        mock_backends.process.launch.assert_not_awaited()
        assert audit_sink.records == []

    @pytest.mark.asyncio
    async def test_caller_picks_alternative(self, pipeline, mock_backends):
        session_id = login(pipeline, "alice")
        result = await pipeline.process_command("open example.com", session_id)
        principal = pipeline.authorizer.principal_for(session_id)
        chosen = await pipeline.run_operation(result.alternatives[0], principal)
        assert chosen.status is OperationStatus.COMPLETED
        mock_backends.browser.navigate.assert_awaited_once_with("https://example.com")

    @pytest.mark.asyncio
    async def test_unrecognized_needs_clarification(self, pipeline):
        result = await pipeline.process_command("make me a sandwich", login(pipeline, "alice"))
        assert result.status == NEEDS_CLARIFICATION
        assert result.error_code is ErrorCode.RESOLUTION_EMPTY
        assert result.message

    @pytest.mark.asyncio
    async def test_unknown_session_rejected_before_resolution(self, pipeline, mock_backends):
        result = await pipeline.process_command("read the file notes.txt", "no-such-session")
        assert result.status == REJECTED
        assert result.error_code is ErrorCode.UNAUTHORIZED
        assert result.resolution is None
        assert result.metrics["resolution"] is None
        mock_backends.file.read.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_session_rejected(self, pipeline, clock, audit_sink):
        session_id = login(pipeline, "alice")
        clock.advance(hours=25)
        result = await pipeline.process_command("read the file notes.txt", session_id)
        assert result.status == REJECTED
        assert "SessionExpired" in audit_sink.event_types()

    @pytest.mark.asyncio
    async def test_backend_failure_rolls_back(self, pipeline, mock_backends):
        mock_backends.file.read.return_value = BackendResult.fail("disk offline")
        result = await pipeline.process_command("read the file notes.txt", login(pipeline, "alice"))
        assert result.status == OperationStatus.ROLLED_BACK.value
        assert result.error_code is ErrorCode.BACKEND_ERROR
        assert result.message == "disk offline"
        assert result.metrics["dispatch_attempts"] == 3
        assert result.metrics["rolled_back"] is True

    @pytest.mark.asyncio
    async def test_command_requires_sysadmin(self, pipeline, mock_backends):
        denied = await pipeline.process_command("run command uptime", login(pipeline, "alice"))
        assert denied.error_code is ErrorCode.UNAUTHORIZED
        allowed = await pipeline.process_command("run command uptime", login(pipeline, "root"))
        assert allowed.status == OperationStatus.COMPLETED.value
        mock_backends.command.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_to_dict_is_json_friendly(self, pipeline):
        result = await pipeline.process_command("read the file notes.txt", login(pipeline, "alice"))
        data = result.to_dict()
        assert data["status"] == "Completed"
        assert data["resolution"]["kind"] == "unambiguous"
        assert data["operation"]["type"] == "FileOp"


@pytest.mark.integration
class TestPipelineLifecycle:
    """Test start and close."""

    @pytest.mark.asyncio
    async def test_start_and_close(self, pipeline, mock_backends):
        await pipeline.start()
        assert pipeline.sweeper.running
        await pipeline.close()
        assert not pipeline.sweeper.running
        mock_backends.browser.close.assert_awaited_once()
