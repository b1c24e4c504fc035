"""Tests for models.py - Operation lifecycle and data models."""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from models import (
    Ambiguous,
    AppAction,
    AppParams,
    CandidateMatch,
    ErrorCode,
    FileAction,
    FileParams,
    InvalidTransition,
    Operation,
    OperationStatus,
    OperationType,
    RequestRecord,
    WebAction,
    WebParams,
    params_match_type,
)


def _file_op(action=FileAction.READ, path="notes.txt", **kwargs):
    return Operation.create(OperationType.FILE_OP, FileParams(action=action, path=path, **kwargs), principal_id="p1")


@pytest.mark.unit
class TestOperationCreate:
    """Test Operation construction."""

    def test_defaults(self):
        op = _file_op()
        assert op.status is OperationStatus.PENDING
        assert op.context.principal_id == "p1"
        assert op.context.attempts == 0
        assert op.started_at is None
        assert op.completed_at is None
        assert op.error is None

    def test_unique_ids(self):
        assert _file_op().id != _file_op().id
        assert _file_op().context.trace_id != _file_op().context.trace_id

    def test_params_match_type(self):
        assert params_match_type(_file_op()) is True
        mismatched = Operation.create(OperationType.WEB_NAV, FileParams(action=FileAction.READ, path="x"))
        assert params_match_type(mismatched) is False


@pytest.mark.unit
class TestOperationTransitions:
    """Test the status state machine."""

    def test_happy_path_stamps_timestamps(self):
        op = _file_op()
        op.transition(OperationStatus.VALIDATING)
        op.transition(OperationStatus.APPROVED)
        op.transition(OperationStatus.EXECUTING)
        assert op.started_at is not None
        op.complete({"content": "hi"})
        assert op.status is OperationStatus.COMPLETED
        assert op.completed_at >= op.started_at
        assert op.context.result == {"content": "hi"}

    @pytest.mark.parametrize("status", [OperationStatus.PENDING, OperationStatus.VALIDATING, OperationStatus.APPROVED])
    def test_fail_from_pre_execution_states(self, status):
        op = _file_op()
        for step in (OperationStatus.VALIDATING, OperationStatus.APPROVED):
            if op.status is status:
                break
            op.transition(step)
        op.fail(ErrorCode.VALIDATION_ERROR, "bad")
        assert op.status is OperationStatus.FAILED
        assert op.error.code is ErrorCode.VALIDATION_ERROR
        assert op.started_at is None

    def test_skipping_states_is_rejected(self):
        op = _file_op()
        with pytest.raises(InvalidTransition):
            op.transition(OperationStatus.EXECUTING)
        with pytest.raises(InvalidTransition):
            op.transition(OperationStatus.COMPLETED)

    def test_completed_is_final(self):
        op = _file_op()
        for step in (OperationStatus.VALIDATING, OperationStatus.APPROVED, OperationStatus.EXECUTING):
            op.transition(step)
        op.complete()
        for target in OperationStatus:
            with pytest.raises(InvalidTransition):
                op.transition(target)

    def test_failed_only_moves_to_rolled_back(self):
        op = _file_op()
        op.fail(ErrorCode.BACKEND_ERROR, "boom")
        first_completed_at = op.completed_at
        with pytest.raises(InvalidTransition):
            op.transition(OperationStatus.EXECUTING)
        op.transition(OperationStatus.ROLLED_BACK)
        assert op.is_terminal
        assert op.completed_at == first_completed_at
        assert op.error.message == "boom"
        with pytest.raises(InvalidTransition):
            op.transition(OperationStatus.FAILED)


@pytest.mark.unit
class TestSerialization:
    """Test JSON-friendly views."""

    def test_to_dict_flattens_enums(self):
        op = Operation.create(OperationType.WEB_NAV, WebParams(action=WebAction.NAVIGATE, url="https://example.com"))
        data = op.to_dict()
        assert data["type"] == "WebNav"
        assert data["status"] == "Pending"
        assert data["params"]["action"] == "NAVIGATE"
        assert data["params"]["url"] == "https://example.com"
        assert data["error"] is None

    def test_to_dict_includes_error(self):
        op = _file_op()
        op.fail(ErrorCode.UNAUTHORIZED, "denied", {"required_capabilities": ["FileWrite"]})
        assert op.to_dict()["error"] == {
            "code": "Unauthorized",
            "message": "denied",
            "details": {"required_capabilities": ["FileWrite"]},
        }


@pytest.mark.unit
class TestResolutionTypes:
    """Test resolution helpers."""

    def test_ambiguous_alternatives(self):
        first = _file_op()
        second = Operation.create(OperationType.APP_CONTROL, AppParams(action=AppAction.LAUNCH, app_name="notes"))
        resolution = Ambiguous(
            candidates=[CandidateMatch(first, 0.5, "a", "file_read"), CandidateMatch(second, 0.5, "b", "app_launch")],
            question="Which one?",
        )
        assert resolution.alternatives == [first, second]
        assert resolution.confidence == 0.5


@pytest.mark.unit
class TestRequestRecord:
    """Test RequestRecord data model."""

    def test_create_request_record(self):
        record = RequestRecord(id="req_001", raw_text="read the file notes.txt")
        assert record.id == "req_001"
        assert record.raw_text == "read the file notes.txt"
