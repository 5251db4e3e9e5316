"""
Outbound call placement.

`place_call` is the unit of work shared by the single-call route and the
batch dispatcher: normalize the number, ask Vapi to dial, record the Call.

`dispatch_batch` fans a contact list out in fixed-size chunks. Chunks run one
after another; the contacts inside a chunk run concurrently on a thread pool
sized to the chunk, so at most BATCH_CHUNK_SIZE Vapi requests are in flight.
Per-contact failures are collected, never raised.
"""
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from flask import current_app
from extensions import db
from calls.models import Agent, Call, BillingStatus, CallStatus
from calls.services.phone import to_e164
from calls.services.vapi_client import VapiError, build_call_request, create_phone_call
from plans.catalog import BATCH_MAX_CONTACTS, BATCH_CHUNK_SIZE
from usage.services.guards import require_eligibility


class BatchValidationError(ValueError):
    pass


class AgentNotFound(LookupError):
    pass


class CallRecordError(Exception):
    """Vapi placed the call but the local Call row could not be written."""

    def __init__(self, call_id: str, call_data: Dict[str, Any]):
        super().__init__("Failed to save call record")
        self.call_id = call_id
        self.call_data = call_data


@dataclass
class ContactCallResult:
    contact_id: Optional[str]
    contact_name: str
    contact_phone: str
    success: bool = False
    call_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "contactId": self.contact_id,
            "contactName": self.contact_name,
            "contactPhone": self.contact_phone,
            "success": self.success,
        }
        if self.call_id:
            out["callId"] = self.call_id
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class BatchResult:
    total_contacts: int
    contact_results: List[ContactCallResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def successful_calls(self) -> int:
        return sum(1 for r in self.contact_results if r.success)

    @property
    def failed_calls(self) -> int:
        return sum(1 for r in self.contact_results if not r.success)

    @property
    def call_ids(self) -> List[str]:
        return [r.call_id for r in self.contact_results if r.success]

    @property
    def success(self) -> bool:
        return self.successful_calls > 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "totalContacts": self.total_contacts,
            "successfulCalls": self.successful_calls,
            "failedCalls": self.failed_calls,
            "errors": list(self.errors),
            "callIds": self.call_ids,
            "contactResults": [r.to_dict() for r in self.contact_results],
        }


def call_name_for(contact: Dict[str, Any], agent_name: str, call_date: str) -> str:
    return f"{contact.get('phone_number') or ''} - {agent_name} - {call_date}"


def get_owned_agent(user_id: int, agent_id: str) -> Agent:
    agent = db.session.query(Agent).filter(Agent.id == agent_id, Agent.user_id == user_id).first()
    if agent is None:
        raise AgentNotFound("Agent not found or access denied")
    return agent


def _record_call(user_id: int, agent_id: str, contact: Dict[str, Any], call_id: str, call_name: str) -> None:
    db.session.add(Call(
        id=call_id,
        user_id=user_id,
        contact_id=str(contact["id"]) if contact.get("id") is not None else None,
        agent_id=agent_id,
        call_name=call_name,
        status=CallStatus.IN_PROGRESS,
        billing_status=BillingStatus.UNBILLED,
    ))
    db.session.commit()


def place_call(user_id: int, agent_id: str, agent_name: str, phone_number_id: str,
               contact: Dict[str, Any], call_date: str) -> Tuple[str, Dict[str, Any]]:
    """
    Dial one contact and record the call. Returns (call_id, vapi_call).
    Raises ValueError for an unusable number, VapiError when Vapi refuses
    or times out, CallRecordError when the row write fails after dialing.
    """
    number = to_e164(contact.get("phone_number") or "")
    body = build_call_request(agent_id, phone_number_id, number, contact)
    call_data = create_phone_call(body)
    call_id = str(call_data["id"])
    try:
        _record_call(user_id, agent_id, contact, call_id, call_name_for(contact, agent_name, call_date))
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("[calls] failed to save call record %s", call_id)
        raise CallRecordError(call_id, call_data) from e
    return call_id, call_data


def _process_contact(app, user_id: int, agent_id: str, agent_name: str, phone_number_id: str,
                     contact: Dict[str, Any], call_date: str) -> Tuple[ContactCallResult, Optional[str]]:
    """Runs on a pool thread with its own app context (and so its own session)."""
    name = contact.get("name") or ""
    result = ContactCallResult(
        contact_id=str(contact["id"]) if contact.get("id") is not None else None,
        contact_name=name,
        contact_phone=contact.get("phone_number") or "",
    )
    with app.app_context():
        try:
            call_id, _ = place_call(user_id, agent_id, agent_name, phone_number_id, contact, call_date)
        except VapiError as e:
            current_app.logger.warning("[calls.batch] Vapi error for %s: %s", name, e.message)
            result.error = e.message
            return result, f"Call failed for {name}: {e.message}"
        except CallRecordError as e:
            result.error = str(e)
            return result, f"{e} for {name}"
        except Exception as e:
            current_app.logger.exception("[calls.batch] error processing %s", name)
            result.error = str(e) or e.__class__.__name__
            return result, f"Failed to process call for {name}: {result.error}"
    result.success = True
    result.call_id = call_id
    return result, None


def _chunks(items: Sequence[Any], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def validate_contacts(contacts) -> List[Dict[str, Any]]:
    if not isinstance(contacts, list) or not contacts:
        raise BatchValidationError("Missing required fields or empty contact list")
    if len(contacts) > BATCH_MAX_CONTACTS:
        raise BatchValidationError(f"Maximum {BATCH_MAX_CONTACTS} contacts allowed per batch call")
    if not all(isinstance(c, dict) for c in contacts):
        raise BatchValidationError("Each contact must be an object")
    return contacts


def dispatch_batch(user_id: int, agent_id: str, phone_number_id: str, contacts) -> BatchResult:
    """
    Place one call per contact. The eligibility gate and the ownership
    check run once, up front; nothing is dialed if either fails.
    contact_results[i] always describes contacts[i].
    """
    contacts = validate_contacts(contacts)
    require_eligibility(user_id)
    agent = get_owned_agent(user_id, agent_id)
    agent_name = agent.name

    app = current_app._get_current_object()
    call_date = datetime.now(timezone.utc).date().isoformat()
    batch = BatchResult(total_contacts=len(contacts))
    total_chunks = (len(contacts) + BATCH_CHUNK_SIZE - 1) // BATCH_CHUNK_SIZE

    current_app.logger.info("[calls.batch] user %s: %d contacts in %d chunks of %d",
                            user_id, len(contacts), total_chunks, BATCH_CHUNK_SIZE)

    with ThreadPoolExecutor(max_workers=BATCH_CHUNK_SIZE, thread_name_prefix="batch-call") as pool:
        for n, chunk in enumerate(_chunks(contacts, BATCH_CHUNK_SIZE), start=1):
            futures = [
                pool.submit(_process_contact, app, user_id, agent.id, agent_name, phone_number_id, contact, call_date)
                for contact in chunk
            ]
            # futures are index-aligned with the chunk; collecting in order keeps input order
            for fut in futures:
                result, error = fut.result()
                batch.contact_results.append(result)
                if error:
                    batch.errors.append(error)
            current_app.logger.info("[calls.batch] completed chunk %d/%d", n, total_chunks)

    current_app.logger.info("[calls.batch] user %s: %d succeeded, %d failed",
                            user_id, batch.successful_calls, batch.failed_calls)
    return batch
