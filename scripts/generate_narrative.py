from __future__ import annotations

import argparse
import asyncio
import json
import sys

from sspgen.core.errors import (
    BadRequestError,
    GenerationError,
    GenerationTimeoutError,
    NotFoundError,
    PersistenceError,
    ProviderAuthError,
    ProviderConfigError,
    RunFailedError,
)
from sspgen.core.logging import configure_logging
from sspgen.services.generation.orchestrator import build_orchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate one control narrative for a system and record the run."
    )
    parser.add_argument("--owner-id", required=True, help="Owner user id of the system")
    parser.add_argument("--system", required=True, help="System id")
    parser.add_argument("--control", default=None, help="Control id (defaults to AC-2)")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known pipeline failures to stable, actionable messages.
    prefix = ""
    if isinstance(exc, RunFailedError):
        prefix = f"run {exc.run_id} failed: "
        exc = exc.cause if isinstance(exc.cause, Exception) else exc
    if isinstance(exc, BadRequestError):
        return 2, f"{prefix}BAD_REQUEST: {exc}"
    if isinstance(exc, NotFoundError):
        return 2, f"{prefix}NOT_FOUND: {exc}"
    if isinstance(exc, ProviderConfigError):
        return 2, f"{prefix}PROVIDER_MISCONFIGURED: {exc}"
    if isinstance(exc, ProviderAuthError):
        return 3, f"{prefix}PROVIDER_AUTH_ERROR: {exc}"
    if isinstance(exc, GenerationTimeoutError):
        return 4, f"{prefix}GENERATION_TIMEOUT: {exc}"
    if isinstance(exc, GenerationError):
        return 4, f"{prefix}GENERATION_FAILED: {exc}"
    if isinstance(exc, PersistenceError):
        return 5, f"{prefix}PERSISTENCE_ERROR: {exc}"
    return 1, f"{prefix}UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator()
    outcome = await orchestrator.generate(
        principal_id=args.owner_id,
        system_id=args.system,
        control_id=args.control,
    )
    print(
        json.dumps(
            {
                "run_id": outcome.run_id,
                "status": outcome.status,
                "control_id": outcome.control_id,
                "narrative": outcome.narrative,
                "evidence": outcome.evidence,
                "citations": outcome.citations,
            },
            indent=2,
        )
    )
    for failure in outcome.write_failures:
        print(f"warning: {failure.operation} failed for run {failure.run_id}: {failure.message}", file=sys.stderr)
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
