from __future__ import annotations
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Optional
from flask import current_app
from extensions import db
from calls.models import Call, CallStatus, BillingStatus
from common.errors import BadRequest, NotFound


END_OF_CALL_REPORT = "end-of-call-report"
STATUS_UPDATE = "status-update"


def is_call_ended(message: Dict[str, Any]) -> bool:
    mtype = message.get("type")
    return mtype == END_OF_CALL_REPORT or (mtype == STATUS_UPDATE and message.get("status") == "ended")


def dollars_to_cents(value) -> Optional[int]:
    """Vapi reports cost in USD; storage is integer cents, rounded half-up."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_iso(value) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _duration_seconds(message: Dict[str, Any]) -> Optional[int]:
    seconds = message.get("durationSeconds")
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
        return int(Decimal(str(seconds)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    started, ended = _parse_iso(message.get("startedAt")), _parse_iso(message.get("endedAt"))
    if started and ended:
        return max(int(round((ended - started).total_seconds())), 0)
    return None


def apply_call_event(message: Dict[str, Any]) -> Optional[Call]:
    """
    Fold a Vapi server message into the matching Call row.

    Returns None for message types that carry nothing to record. Fields are
    overwritten, never accumulated, so a redelivered report leaves the row
    as it was. Absent fields keep their stored value. Caller commits.
    """
    if not is_call_ended(message):
        return None

    ref = message.get("call")
    call_id = ref.get("id") if isinstance(ref, dict) else None
    if not call_id:
        raise BadRequest("Missing call id")

    call = db.session.get(Call, str(call_id))
    if call is None:
        current_app.logger.warning("[calls.webhook] call record not found: %s", call_id)
        raise NotFound("Call record not found", details={"callId": call_id})

    ended_reason = message.get("endedReason")
    call.status = CallStatus.CUSTOMER_BUSY if ended_reason == "customer-busy" else CallStatus.COMPLETED
    call.end_reason = ended_reason or "Unknown"

    if message.get("type") == END_OF_CALL_REPORT:
        cost = dollars_to_cents(message.get("cost"))
        if cost is not None:
            call.cost = cost
        if message.get("transcript"):
            call.transcript = message["transcript"]
        recording = message.get("recordingUrl") or message.get("stereoRecordingUrl")
        if recording:
            call.recording_url = recording
        duration = _duration_seconds(message)
        if duration is not None:
            call.duration = duration

    current_app.logger.info("[calls.webhook] call %s -> %s (%s)", call.id, call.status, call.end_reason)
    return call


def needs_settlement(call: Optional[Call]) -> bool:
    return bool(call is not None and call.cost and call.billing_status == BillingStatus.UNBILLED)
