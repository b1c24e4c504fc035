"""CLI orchestrator for opctl with observability."""
from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from authorizer import AuthError, hash_password
from config import AppConfig, config
from logging_utils import logger
from models import RequestRecord
from pipeline import CommandPipeline, build_pipeline

PASSWORD_ENV = "OPCTL_PASSWORD"


def load_requests(path: Path) -> List[RequestRecord]:
    """Load ``[{"id": ..., "raw_text": ...}]`` request records from a JSON file."""
    with path.open("r", encoding="utf-8") as handle:
        raw_requests = json.load(handle)

    requests: List[RequestRecord] = []
    for index, entry in enumerate(raw_requests, start=1):
        requests.append(
            RequestRecord(
                id=str(entry.get("id", f"req_{index:03d}")),
                raw_text=str(entry.get("raw_text", "")),
            )
        )
    return requests


async def process_requests(pipeline: CommandPipeline, requests: List[RequestRecord], session_id: str) -> list[dict]:
    """Process requests one at a time through the pipeline."""
    results = []
    for req in requests:
        outcome = await pipeline.process_command(req.raw_text, session_id)
        results.append({"request_id": req.id, **outcome.to_dict()})
    return results


async def run_batch(
    requests: List[RequestRecord],
    username: str,
    password: str,
    app_config: Optional[AppConfig] = None,
    pipeline: Optional[CommandPipeline] = None,
) -> list[dict]:
    """Authenticate once, then run the whole batch under that session."""
    pipeline = pipeline or build_pipeline(app_config or config)
    await pipeline.start()
    try:
        session = pipeline.authorizer.authenticate(username, password)
        return await process_requests(pipeline, requests, session.id)
    finally:
        await pipeline.close()


def _read_password(prompt: str = "Password: ") -> str:
    return os.getenv(PASSWORD_ENV) or getpass.getpass(prompt)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="opctl: resolve and execute free-text operations")
    parser.add_argument("--input", help="Path to the input JSON file")
    parser.add_argument("--username", help="Principal to authenticate as")
    parser.add_argument("--hash-password", action="store_true", help="Print a bcrypt hash for a policy entry and exit")
    parser.add_argument("--health", action="store_true", help="Run health checks and exit")
    args = parser.parse_args(argv)

    if args.hash_password:
        print(hash_password(_read_password("Password to hash: ")))
        return 0

    if args.health:
        from health import health_check_cli

        return health_check_cli()

    if not args.input or not args.username:
        parser.error("--input and --username are required")

    config.validate()
    input_path = Path(args.input).resolve()
    start = time.time()
    requests = load_requests(input_path)
    try:
        results = asyncio.run(run_batch(requests, args.username, _read_password()))
    except AuthError as exc:
        logger.error("Batch aborted", extra={"extra": {"code": exc.code.value, "error": exc.message}})
        print(json.dumps({"error_code": exc.code.value, "message": exc.message}, indent=2))
        return 1

    total_latency_ms = int((time.time() - start) * 1000)
    logger.info("Completed batch", extra={"extra": {"total_latency_ms": total_latency_ms, "count": len(results)}})
    print(json.dumps(results, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
