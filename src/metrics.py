"""Per-request metrics collection for the opctl pipeline."""
from __future__ import annotations

import time
import uuid
from typing import Any, Dict


class PipelineMetrics:
    def __init__(self) -> None:
        self.correlation_id = str(uuid.uuid4())
        self.start_time = time.time()

        # Resolver metrics
        self.resolution: str | None = None
        self.confidence: float | None = None
        self.resolve_latency_ms: int = 0

        # Authorizer metrics
        self.session_valid: bool | None = None
        self.authorized: bool | None = None
        self.authorize_latency_ms: int = 0

        # Executor metrics
        self.dispatch_attempts: int = 0
        self.rolled_back: bool = False
        self.final_status: str | None = None
        self.error_code: str | None = None
        self.execute_latency_ms: int = 0

        # End-to-end metrics
        self.total_latency_ms: int = 0

    def finalize(self) -> Dict[str, Any]:
        """Finalize metrics and return them as a dictionary."""
        self.total_latency_ms = int((time.time() - self.start_time) * 1000)
        return self.__dict__.copy()
