from __future__ import annotations


RUN_STATUS_PENDING = "pending"
RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

RUN_STATUSES: tuple[str, ...] = (
    RUN_STATUS_PENDING,
    RUN_STATUS_RUNNING,
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
)

# Runs in these states may still transition; everything else is terminal.
RUN_ACTIVE_STATUSES: frozenset[str] = frozenset({RUN_STATUS_PENDING, RUN_STATUS_RUNNING})

IMPACT_LEVELS: tuple[str, ...] = ("low", "moderate", "high")


def normalize_impact_level(value: str) -> str:
    # Accept case/whitespace variants from form input but store one vocabulary.
    normalized = value.strip().lower()
    if normalized not in IMPACT_LEVELS:
        raise ValueError(f"Unsupported impact level: {value}")
    return normalized
