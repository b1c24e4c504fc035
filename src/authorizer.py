"""Authentication, session liveness and capability authorization for opctl."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

import bcrypt
import jwt

from config import SecurityConfig
from logging_utils import AuditSink, logger
from metrics import PipelineMetrics
from models import (
    AuditRecord,
    Capability,
    ErrorCode,
    Operation,
    OperationType,
    Principal,
    SecurityEvent,
    Session,
    Severity,
    new_id,
    params_match_type,
    utcnow,
)

Clock = Callable[[], datetime]

REQUIRED_CAPABILITIES: Dict[OperationType, FrozenSet[Capability]] = {
    OperationType.FILE_OP: frozenset({Capability.FILE_READ, Capability.FILE_WRITE}),
    OperationType.WEB_NAV: frozenset({Capability.WEB_ACCESS}),
    OperationType.APP_CONTROL: frozenset({Capability.APP_CONTROL}),
    OperationType.SYSTEM_SETTINGS: frozenset({Capability.SYSTEM_SETTINGS}),
    OperationType.COMMAND_EXEC: frozenset({Capability.COMMAND_EXEC}),
}


class AuthError(Exception):
    """Authentication or token failure, carrying a stable error code."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def hash_password(password: str, rounds: int = 12) -> str:
    """Produce a bcrypt hash suitable for the ``password_hash`` policy field."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def required_capabilities(operation_type: OperationType) -> FrozenSet[Capability]:
    return REQUIRED_CAPABILITIES.get(operation_type, frozenset())


class PrincipalStore:
    """Static principal records: username -> password hash and capability set."""

    def __init__(self) -> None:
        self._records: Dict[str, Tuple[str, Principal]] = {}

    def add(self, username: str, password_hash: str, capabilities: Iterable[Capability], principal_id: Optional[str] = None) -> Principal:
        principal = Principal(id=principal_id or new_id(), capabilities=frozenset(capabilities), username=username)
        self._records[username] = (password_hash, principal)
        return principal

    def verify(self, username: str, password: str) -> Optional[Principal]:
        record = self._records.get(username)
        if record is None:
            return None
        password_hash, principal = record
        try:
            matches = bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            logger.error("Malformed password hash", extra={"extra": {"username": username}})
            return None
        return principal if matches else None

    def get_by_id(self, principal_id: str) -> Optional[Principal]:
        for _, principal in self._records.values():
            if principal.id == principal_id:
                return principal
        return None

    def __len__(self) -> int:
        return len(self._records)

    @classmethod
    def from_policy(cls, policy: Dict[str, Any], security: Optional[SecurityConfig] = None) -> PrincipalStore:
        """Build the store from ``roles`` / ``principals`` policy sections plus an optional env bootstrap admin."""
        roles: Dict[str, List[str]] = policy.get("roles", {})
        store = cls()
        for username, entry in policy.get("principals", {}).items():
            tokens = set(entry.get("capabilities", []))
            for role in entry.get("roles", []):
                if role not in roles:
                    raise ValueError(f"Principal '{username}' references unknown role '{role}'")
                tokens.update(roles[role])
            store.add(username, entry["password_hash"], (Capability(t) for t in tokens), entry.get("id"))

        if security and security.admin_username and security.admin_password_hash:
            store.add(security.admin_username, security.admin_password_hash, Capability)
        return store


class SessionStore:
    """Process-wide session table owned by one Authorizer."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def put(self, session: Session) -> None:
        self._sessions[session.id] = session

    def evict(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def items(self) -> Iterator[Tuple[str, Session]]:
        # Snapshot so callers may evict while iterating.
        return iter(list(self._sessions.items()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class Authorizer:
    """Authenticates principals, checks sessions and authorizes Operations."""

    def __init__(
        self,
        principals: PrincipalStore,
        security: Optional[SecurityConfig] = None,
        sessions: Optional[SessionStore] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.principals = principals
        self.security = security or SecurityConfig()
        self.sessions = sessions if sessions is not None else SessionStore()
        self.audit_sink = audit_sink or AuditSink()
        self.clock = clock

    # --- authentication ---------------------------------------------------

    def authenticate(self, username: str, password: str) -> Session:
        principal = self.principals.verify(username, password)
        if principal is None:
            logger.warning("Authentication failed", extra={"extra": {"username": username}})
            self.audit_sink.log_security_event(
                SecurityEvent(type="LoginFailed", severity=Severity.MEDIUM, details={"username": username})
            )
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Invalid credentials")

        now = self.clock()
        session_id = new_id()
        expires_at = now + timedelta(hours=self.security.session_ttl_hours)
        token = jwt.encode(
            {"sub": principal.id, "sid": session_id, "iat": int(now.timestamp()), "exp": int(expires_at.timestamp())},
            self.security.jwt_secret,
            algorithm=self.security.jwt_algorithm,
        )
        session = Session(
            id=session_id,
            principal_id=principal.id,
            token=token,
            created_at=now,
            expires_at=expires_at,
            last_activity=now,
        )
        self.sessions.put(session)
        self.audit_sink.log_security_event(
            SecurityEvent(
                type="UserLogin",
                severity=Severity.LOW,
                details={"principal_id": principal.id, "session_id": session_id},
                principal_id=principal.id,
            )
        )
        logger.info("Login successful", extra={"extra": {"principal_id": principal.id, "session_id": session_id}})
        return session

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Check the token signature and return its claims.

        Expiry is governed by the session table and the injected clock, so the
        ``exp`` claim is not enforced here.
        """
        try:
            return jwt.decode(
                token,
                self.security.jwt_secret,
                algorithms=[self.security.jwt_algorithm],
                options={"verify_exp": False},
            )
        except jwt.InvalidTokenError as exc:
            raise AuthError(ErrorCode.UNAUTHORIZED, f"Invalid session token: {exc}") from exc

    # --- sessions ---------------------------------------------------------

    def validate_session(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False

        try:
            claims = self.verify_token(session.token)
        except AuthError:
            logger.warning("Invalid session token", extra={"extra": {"session_id": session_id}})
            return False
        if claims.get("sid") != session.id or claims.get("sub") != session.principal_id:
            logger.warning("Session token bound to another session", extra={"extra": {"session_id": session_id}})
            return False

        now = self.clock()
        if now > session.expires_at:
            self.sessions.evict(session_id)
            self.audit_sink.log_security_event(
                SecurityEvent(
                    type="SessionExpired",
                    severity=Severity.LOW,
                    details={"session_id": session_id},
                    principal_id=session.principal_id,
                )
            )
            return False

        session.last_activity = now
        return True

    def principal_for(self, session_id: str) -> Principal:
        """Principal behind a live session; raises AuthError when there is none."""
        if not self.validate_session(session_id):
            raise AuthError(ErrorCode.UNAUTHORIZED, "Invalid or expired session")
        session = self.sessions.get(session_id)
        principal = self.principals.get_by_id(session.principal_id) if session else None
        if principal is None:
            raise AuthError(ErrorCode.UNAUTHORIZED, "Session principal is no longer configured")
        return principal

    def cleanup_sessions(self) -> int:
        now = self.clock()
        evicted = 0
        for session_id, session in self.sessions.items():
            if now > session.expires_at:
                self.sessions.evict(session_id)
                evicted += 1
                self.audit_sink.log_security_event(
                    SecurityEvent(
                        type="SessionCleanup",
                        severity=Severity.LOW,
                        details={"session_id": session_id},
                        principal_id=session.principal_id,
                    )
                )
        if evicted:
            logger.info("Expired sessions evicted", extra={"extra": {"count": evicted, "remaining": len(self.sessions)}})
        return evicted

    # --- authorization ----------------------------------------------------

    def authorize(self, operation: Operation, principal: Principal, metrics: Optional[PipelineMetrics] = None) -> bool:
        """
        True iff ``principal`` holds every capability required by ``operation.type``.

        Every call produces an audit record, whatever the outcome.
        """
        start = time.time()
        required = required_capabilities(operation.type)
        consistent = params_match_type(operation)
        authorized = consistent and bool(required) and required.issubset(principal.capabilities)
        missing = sorted(c.value for c in required - principal.capabilities)

        details: Dict[str, Any] = {
            "operation_type": operation.type.value,
            "required_capabilities": sorted(c.value for c in required),
            "missing_capabilities": missing,
            "authorized": authorized,
        }
        if not consistent:
            details["reason"] = "params do not match operation type"

        self.audit_sink.log_audit(
            AuditRecord(
                principal_id=principal.id,
                action="OperationAuthorization",
                status="SUCCESS" if authorized else "FAILURE",
                details=details,
                operation_id=operation.id,
            )
        )
        logger.info(
            "Authorization result",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id if metrics else None,
                    "operation_id": operation.id,
                    "principal_id": principal.id,
                    "authorized": authorized,
                    "missing": missing,
                }
            },
        )

        if metrics:
            metrics.authorized = authorized
            metrics.authorize_latency_ms = int((time.time() - start) * 1000)
        return authorized


class SessionSweeper:
    """Scheduled task that evicts expired sessions on a fixed interval."""

    def __init__(self, authorizer: Authorizer, interval_seconds: float) -> None:
        self.authorizer = authorizer
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.authorizer.cleanup_sessions()
            except Exception as exc:
                logger.error("Session cleanup error", extra={"extra": {"error": str(exc)}})
