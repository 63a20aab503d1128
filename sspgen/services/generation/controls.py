from __future__ import annotations

from dataclasses import dataclass

from sspgen.core.errors import BadRequestError


@dataclass(frozen=True)
class ControlDefinition:
    control_id: str
    title: str
    family: str
    description: str


CONTROL_CATALOG: tuple[ControlDefinition, ...] = (
    ControlDefinition(
        control_id="AC-2",
        title="Account Management",
        family="Access Control",
        description=(
            "Define, create, enable, modify, review, disable, and remove system accounts "
            "in accordance with organizational policy."
        ),
    ),
    ControlDefinition(
        control_id="AC-3",
        title="Access Enforcement",
        family="Access Control",
        description="Enforce approved authorizations for logical access to information and system resources.",
    ),
    ControlDefinition(
        control_id="AC-7",
        title="Unsuccessful Logon Attempts",
        family="Access Control",
        description="Limit consecutive invalid logon attempts and lock or delay the account when exceeded.",
    ),
    ControlDefinition(
        control_id="AU-2",
        title="Event Logging",
        family="Audit and Accountability",
        description="Identify the types of events the system is capable of logging in support of the audit function.",
    ),
    ControlDefinition(
        control_id="CM-2",
        title="Baseline Configuration",
        family="Configuration Management",
        description="Develop, document, and maintain a current baseline configuration of the system.",
    ),
    ControlDefinition(
        control_id="IA-2",
        title="Identification and Authentication (Organizational Users)",
        family="Identification and Authentication",
        description="Uniquely identify and authenticate organizational users, including multi-factor authentication.",
    ),
    ControlDefinition(
        control_id="SC-8",
        title="Transmission Confidentiality and Integrity",
        family="System and Communications Protection",
        description="Protect the confidentiality and integrity of transmitted information.",
    ),
)

_CONTROLS_BY_ID: dict[str, ControlDefinition] = {control.control_id: control for control in CONTROL_CATALOG}


def normalize_control_id(control_id: str) -> str:
    # Catalog codes are upper-case with a hyphen (e.g. "ac-2" -> "AC-2").
    return control_id.strip().upper()


def get_control(control_id: str) -> ControlDefinition:
    control = _CONTROLS_BY_ID.get(normalize_control_id(control_id))
    if control is None:
        raise BadRequestError(f"Unsupported control_id: {control_id}")
    return control
