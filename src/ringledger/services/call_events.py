"""Normalization of telephony call-completion webhooks into CallEvents.

The voice provider sends ``call_ended`` as soon as the line drops and
``call_analysis`` once post-call extraction has run. Both carry the same call
id, and either may arrive first or more than once. Only a handful of known
intake fields matter to the ledger; any other provider-specific analysis
values are kept verbatim in ``CallIntake.extras``.
"""

import json
import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ringledger.exceptions import (
    InvalidCallPayloadError,
    MissingBusinessReferenceError,
    MissingCallIdError,
)
from ringledger.services.phone import normalize_e164

CALL_COMPLETION_EVENTS = frozenset({"call_ended", "call_analysis"})

EMERGENCY_KEYWORDS = (
    "flooding",
    "no heat",
    "gas smell",
    "burst pipe",
    "emergency",
    "urgent",
    "sparks",
    "smoke",
    "no power",
    "electrical fire",
    "no water",
    "frozen pipes",
)

SUMMARY_MAX_CHARS = 500

# Analysis keys consumed into CallIntake; everything else is passed through
_KNOWN_KEYS = frozenset(
    {
        "caller_name",
        "name",
        "caller_phone",
        "phone",
        "service_address",
        "address",
        "city",
        "issue_description",
        "appointment_preference",
        "department",
        "emergency",
        "is_emergency",
        "lead_tag",
        "summary",
        "call_summary",
        "transcript",
        "custom_analysis_data",
        "extracted_variables",
    }
)


class LeadTag(str, Enum):
    """Lead classification stored on a call (plans with lead tagging)."""

    EMERGENCY = "EMERGENCY"
    ESTIMATE = "ESTIMATE"
    FOLLOW_UP = "FOLLOW_UP"
    GENERAL = "GENERAL"


@dataclass(frozen=True)
class CallIntake:
    """Structured intake extracted from a call's analysis."""

    name: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    issue_description: str | None = None
    appointment_preference: str | None = None
    department: str | None = None
    emergency: bool = False
    summary: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)

    def known_fields(self) -> dict[str, Any]:
        """Known intake fields with empty values dropped."""
        data = asdict(self)
        data.pop("extras")
        return {k: v for k, v in data.items() if v not in (None, "")}


@dataclass(frozen=True)
class CallEvent:
    """A verified, normalized call-completion event."""

    event_type: str
    external_call_id: str
    duration_seconds: int
    agent_id: str | None = None
    client_id: str | None = None
    forwarded_from_number: str | None = None
    from_number: str | None = None
    transcript: str | None = None
    intake: CallIntake = field(default_factory=CallIntake)
    lead_tag: LeadTag = LeadTag.GENERAL
    has_analysis: bool = False

    @property
    def business_reference(self) -> str:
        """Human-readable reference used in logs when the business is unknown."""
        if self.client_id:
            return f"client {self.client_id}"
        if self.agent_id:
            return f"agent {self.agent_id}"
        return f"number {self.forwarded_from_number}"

    @property
    def missed_call_recovery(self) -> bool:
        """Call ended before analysis but we still have a number to call back."""
        return not self.has_analysis and bool(self.intake.phone)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1")
    return False


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) or math.isinf(number) else number


def extract_duration_seconds(call: dict[str, Any], payload: dict[str, Any]) -> int:
    """Call duration in whole seconds.

    Prefers an explicit duration, then ``end_timestamp - start_timestamp``
    (milliseconds); falls back to 0 when neither is present.
    """
    duration_ms = _number(call.get("duration_ms", payload.get("duration_ms")))
    if duration_ms is not None:
        return max(0, int(duration_ms // 1000))

    duration_s = _number(call.get("duration_seconds", payload.get("duration_seconds")))
    if duration_s is not None:
        return max(0, int(duration_s))

    start = _number(call.get("start_timestamp"))
    end = _number(call.get("end_timestamp"))
    if start is not None and end is not None:
        return max(0, int((end - start) // 1000))
    return 0


def detect_emergency(analysis: dict[str, Any], variables: dict[str, Any]) -> bool:
    """Explicit emergency indicator, else a keyword match over the analysis."""
    for source in (analysis, variables):
        if _truthy(source.get("emergency")) or _truthy(source.get("is_emergency")):
            return True
    if not analysis:
        return False
    text = json.dumps(analysis, default=str).lower()
    return any(keyword in text for keyword in EMERGENCY_KEYWORDS)


def detect_lead_tag(analysis: dict[str, Any], variables: dict[str, Any], emergency: bool) -> LeadTag:
    if emergency:
        return LeadTag.EMERGENCY
    raw = str(variables.get("lead_tag") or analysis.get("lead_tag") or "").lower()
    text = json.dumps(analysis, default=str).lower() if analysis else ""
    if "estimate" in raw or "estimate" in text or "quote" in text:
        return LeadTag.ESTIMATE
    if "follow" in raw or "follow-up" in text or "callback" in text:
        return LeadTag.FOLLOW_UP
    return LeadTag.GENERAL


def _extract_intake(
    analysis: dict[str, Any],
    variables: dict[str, Any],
    from_number: str | None,
    transcript: str | None,
) -> CallIntake:
    def first(*keys: str) -> str | None:
        for key in keys:
            value = _text(analysis.get(key)) or _text(variables.get(key))
            if value:
                return value
        return None

    summary = first("summary", "call_summary")
    if not summary and transcript:
        summary = transcript[:SUMMARY_MAX_CHARS]

    extras = {k: v for k, v in variables.items() if k not in _KNOWN_KEYS}
    extras.update({k: v for k, v in analysis.items() if k not in _KNOWN_KEYS})

    return CallIntake(
        name=first("caller_name", "name"),
        phone=first("caller_phone", "phone") or from_number,
        address=first("service_address", "address"),
        city=first("city"),
        issue_description=first("issue_description"),
        appointment_preference=first("appointment_preference"),
        department=first("department"),
        emergency=detect_emergency(analysis, variables),
        summary=summary,
        extras=extras,
    )


def normalize_call_event(payload: Any) -> CallEvent:
    """Parse a verified telephony webhook body into a CallEvent.

    Raises:
        InvalidCallPayloadError: The body is not a JSON object.
        MissingCallIdError: No call id in ``call.call_id`` or ``call_id``.
        MissingBusinessReferenceError: No agent id, client id or forwarded
            number to resolve the business from.
    """
    if not isinstance(payload, dict):
        raise InvalidCallPayloadError("expected a JSON object")

    call = _as_dict(payload.get("call"))
    external_call_id = _text(call.get("call_id")) or _text(payload.get("call_id"))
    if not external_call_id:
        raise MissingCallIdError

    metadata = _as_dict(call.get("metadata")) or _as_dict(payload.get("metadata"))
    agent_id = _text(call.get("agent_id")) or _text(payload.get("agent_id"))
    client_id = _text(metadata.get("client_id"))
    forwarded_from = normalize_e164(_text(metadata.get("forwarded_from_number")))
    if not (agent_id or client_id or forwarded_from):
        raise MissingBusinessReferenceError(external_call_id)

    # call_analysis is nested in the call object, older payloads put it top level
    analysis = _as_dict(call.get("call_analysis")) or _as_dict(payload.get("call_analysis"))
    variables = {
        **_as_dict(analysis.get("custom_analysis_data")),
        **_as_dict(analysis.get("extracted_variables")),
    }
    from_number = _text(call.get("from_number"))
    transcript = _text(analysis.get("transcript")) or _text(call.get("transcript"))
    intake = _extract_intake(analysis, variables, from_number, transcript)

    return CallEvent(
        event_type=_text(payload.get("event")) or "call_ended",
        external_call_id=external_call_id,
        duration_seconds=extract_duration_seconds(call, payload),
        agent_id=agent_id,
        client_id=client_id,
        forwarded_from_number=forwarded_from,
        from_number=from_number,
        transcript=transcript,
        intake=intake,
        lead_tag=detect_lead_tag(analysis, variables, intake.emergency),
        has_analysis=bool(analysis),
    )
