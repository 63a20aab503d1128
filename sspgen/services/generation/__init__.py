from __future__ import annotations

from sspgen.services.generation.context import ContextAssembler, GenerationContext, SystemProfile
from sspgen.services.generation.controls import CONTROL_CATALOG, ControlDefinition, get_control
from sspgen.services.generation.generator import (
    GenerationConfig,
    NarrativeGenerator,
    NarrativeResult,
    build_messages,
    parse_narrative_payload,
)
from sspgen.services.generation.orchestrator import (
    GenerationOutcome,
    RunOrchestrator,
    build_orchestrator,
)
from sspgen.services.generation.run_store import RunStore, WriteFailure
from sspgen.services.generation.section_store import SectionStore


__all__ = [
    "CONTROL_CATALOG",
    "ContextAssembler",
    "ControlDefinition",
    "GenerationConfig",
    "GenerationContext",
    "GenerationOutcome",
    "NarrativeGenerator",
    "NarrativeResult",
    "RunOrchestrator",
    "RunStore",
    "SectionStore",
    "SystemProfile",
    "WriteFailure",
    "build_messages",
    "build_orchestrator",
    "get_control",
    "parse_narrative_payload",
]
