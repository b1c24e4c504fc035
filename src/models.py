"""Data models and constants for the opctl pipeline."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OperationType(str, Enum):
    FILE_OP = "FileOp"
    WEB_NAV = "WebNav"
    APP_CONTROL = "AppControl"
    SYSTEM_SETTINGS = "SystemSettings"
    COMMAND_EXEC = "CommandExec"


class OperationStatus(str, Enum):
    PENDING = "Pending"
    VALIDATING = "Validating"
    APPROVED = "Approved"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class Capability(str, Enum):
    FILE_READ = "FileRead"
    FILE_WRITE = "FileWrite"
    SYSTEM_SETTINGS = "SystemSettings"
    APP_CONTROL = "AppControl"
    WEB_ACCESS = "WebAccess"
    COMMAND_EXEC = "CommandExec"


class ErrorCode(str, Enum):
    RESOLUTION_AMBIGUOUS = "ResolutionAmbiguous"
    RESOLUTION_EMPTY = "ResolutionEmpty"
    UNAUTHORIZED = "Unauthorized"
    VALIDATION_ERROR = "ValidationError"
    BACKEND_ERROR = "BackendError"
    ROLLBACK_FAILED = "RollbackFailed"
    INVALID_CREDENTIALS = "InvalidCredentials"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


TERMINAL_STATUSES: FrozenSet[OperationStatus] = frozenset(
    {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.ROLLED_BACK}
)

# Forward-only edges; FAILED -> ROLLED_BACK is the single edge out of a terminal status.
ALLOWED_TRANSITIONS: Dict[OperationStatus, FrozenSet[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.VALIDATING, OperationStatus.FAILED}),
    OperationStatus.VALIDATING: frozenset({OperationStatus.APPROVED, OperationStatus.FAILED}),
    OperationStatus.APPROVED: frozenset({OperationStatus.EXECUTING, OperationStatus.FAILED}),
    OperationStatus.EXECUTING: frozenset({OperationStatus.COMPLETED, OperationStatus.FAILED}),
    OperationStatus.FAILED: frozenset({OperationStatus.ROLLED_BACK}),
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.ROLLED_BACK: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when an Operation is moved along an edge the state machine forbids."""

    def __init__(self, operation_id: str, current: OperationStatus, target: OperationStatus) -> None:
        super().__init__(f"Operation {operation_id}: illegal transition {current.value} -> {target.value}")
        self.operation_id = operation_id
        self.current = current
        self.target = target


# --- parameter bags -------------------------------------------------------


class FileAction(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    LIST = "LIST"
    SEARCH = "SEARCH"
    MOVE = "MOVE"
    COPY = "COPY"


class WebAction(str, Enum):
    NAVIGATE = "NAVIGATE"
    CLICK = "CLICK"
    TYPE = "TYPE"
    SCREENSHOT = "SCREENSHOT"


class AppAction(str, Enum):
    LAUNCH = "LAUNCH"
    CLOSE = "CLOSE"


class SettingsAction(str, Enum):
    GET = "GET"
    SET = "SET"


@dataclass
class FileParams:
    action: FileAction
    path: str
    content: Optional[str] = None
    destination: Optional[str] = None
    pattern: Optional[str] = None
    recursive: bool = False


@dataclass
class WebParams:
    action: WebAction
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None
    x: Optional[int] = None
    y: Optional[int] = None
    path: Optional[str] = None


@dataclass
class AppParams:
    action: AppAction
    app_name: str
    args: List[str] = field(default_factory=list)


@dataclass
class SettingsParams:
    action: SettingsAction
    setting: str
    value: Optional[str] = None


@dataclass
class CommandParams:
    command: str
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None


OperationParams = Union[FileParams, WebParams, AppParams, SettingsParams, CommandParams]

PARAMS_BY_TYPE: Dict[OperationType, type] = {
    OperationType.FILE_OP: FileParams,
    OperationType.WEB_NAV: WebParams,
    OperationType.APP_CONTROL: AppParams,
    OperationType.SYSTEM_SETTINGS: SettingsParams,
    OperationType.COMMAND_EXEC: CommandParams,
}


# --- operation ------------------------------------------------------------


@dataclass
class OperationError:
    code: ErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


@dataclass
class OperationContext:
    principal_id: Optional[str] = None
    trace_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    result: Optional[Dict[str, Any]] = None
    attempts: int = 0


@dataclass
class Operation:
    """A typed unit of work with a tracked lifecycle."""

    type: OperationType
    params: OperationParams
    context: OperationContext = field(default_factory=OperationContext)
    priority: Priority = Priority.MEDIUM
    id: str = field(default_factory=new_id)
    status: OperationStatus = OperationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[OperationError] = None

    @classmethod
    def create(
        cls,
        op_type: OperationType,
        params: OperationParams,
        principal_id: Optional[str] = None,
        priority: Priority = Priority.MEDIUM,
    ) -> Operation:
        return cls(type=op_type, params=params, context=OperationContext(principal_id=principal_id), priority=priority)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: OperationStatus) -> None:
        """Move to ``target``, stamping timestamps the first time they apply."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status, target)
        self.status = target
        now = utcnow()
        if target is OperationStatus.EXECUTING and self.started_at is None:
            self.started_at = now
        if target in TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = now

    def fail(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.transition(OperationStatus.FAILED)
        self.error = OperationError(code=code, message=message, details=details or {})

    def complete(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.transition(OperationStatus.COMPLETED)
        self.context.result = result

    def to_dict(self) -> Dict[str, Any]:
        params = {
            key: (value.value if isinstance(value, Enum) else value) for key, value in vars(self.params).items()
        }
        return {
            "id": self.id,
            "type": self.type.value,
            "params": params,
            "priority": self.priority.value,
            "status": self.status.value,
            "principal_id": self.context.principal_id,
            "trace_id": self.context.trace_id,
            "attempts": self.context.attempts,
            "result": self.context.result,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error.to_dict() if self.error else None,
        }


def params_match_type(operation: Operation) -> bool:
    """True when the params bag is the one declared for the operation type."""
    expected = PARAMS_BY_TYPE.get(operation.type)
    return expected is not None and isinstance(operation.params, expected)


# --- resolution -----------------------------------------------------------


@dataclass
class CandidateMatch:
    """A resolved Operation paired with its score and the text that produced it."""

    operation: Operation
    confidence: float
    span: str
    template: str


@dataclass
class NeedsClarification:
    question: str
    confidence: float = 0.0


@dataclass
class Unambiguous:
    operation: Operation
    confidence: float
    match: CandidateMatch


@dataclass
class Ambiguous:
    candidates: List[CandidateMatch]
    question: str
    confidence: float = 0.5

    @property
    def alternatives(self) -> List[Operation]:
        return [candidate.operation for candidate in self.candidates]


Resolution = Union[NeedsClarification, Unambiguous, Ambiguous]


# --- security -------------------------------------------------------------


@dataclass
class Principal:
    id: str
    capabilities: FrozenSet[Capability] = frozenset()
    username: Optional[str] = None


@dataclass
class Session:
    id: str
    principal_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime


@dataclass
class SecurityEvent:
    type: str
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)
    principal_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AuditRecord:
    principal_id: str
    action: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    operation_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


# --- executor -------------------------------------------------------------


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> ValidationResult:
        return cls(valid=True)

    @classmethod
    def reject(cls, *errors: str) -> ValidationResult:
        return cls(valid=False, errors=list(errors))


@dataclass
class ResourceUsage:
    cpu: float
    memory: float
    disk: float


@dataclass
class SystemState:
    resources: ResourceUsage
    active_operations: int
    queued_operations: int
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": vars(self.resources),
            "active_operations": self.active_operations,
            "queued_operations": self.queued_operations,
            "timestamp": self.timestamp.isoformat(),
        }


# --- cli ------------------------------------------------------------------


@dataclass
class RequestRecord:
    """One free-text request from a batch input file."""

    id: str
    raw_text: str
