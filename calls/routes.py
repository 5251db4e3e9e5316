from __future__ import annotations
from datetime import datetime, timezone
from flask import jsonify, request
from flask_jwt_extended import jwt_required
from extensions import db, limiter
from auth import current_user_id
from common.api import ok, get_json, parse_pagination
from common.errors import ApiError, BadRequest, NotFound, Unprocessable
from usage.services.guards import eligibility_required
from .models import Call
from .services.dispatcher import (
    AgentNotFound,
    BatchValidationError,
    CallRecordError,
    dispatch_batch,
    get_owned_agent,
    place_call,
)
from .services.vapi_client import VapiError
from . import calls_bp


@calls_bp.post("")
@jwt_required()
@limiter.limit("30 per minute")
@eligibility_required
def create_call():
    user_id = current_user_id()
    data = get_json(required=("agentId", "phoneNumberId", "contact"))
    contact = data["contact"]
    if not isinstance(contact, dict) or not contact.get("phone_number"):
        raise Unprocessable("contact.phone_number is required")

    try:
        agent = get_owned_agent(user_id, str(data["agentId"]))
    except AgentNotFound as e:
        raise NotFound(str(e))

    call_date = datetime.now(timezone.utc).date().isoformat()
    try:
        call_id, call_data = place_call(user_id, agent.id, agent.name, str(data["phoneNumberId"]), contact, call_date)
    except ValueError as e:
        raise Unprocessable(str(e))
    except VapiError as e:
        raise ApiError(e.message, status_code=e.status_code or 502, code="provider_error",
                       details={"provider": e.payload} if e.payload else None)
    except CallRecordError as e:
        # the call is already ringing; hand it back even though the row is missing
        return ok({"call": e.call_data, "callId": e.call_id, "recorded": False}, status=201)

    return ok({"call": call_data, "callId": call_id, "recorded": True}, status=201)


@calls_bp.post("/batch")
@jwt_required()
@limiter.limit("5 per minute")
def create_batch_calls():
    user_id = current_user_id()
    data = get_json(required=("agentId", "phoneNumberId"))
    try:
        result = dispatch_batch(user_id, str(data["agentId"]), str(data["phoneNumberId"]), data.get("contacts"))
    except BatchValidationError as e:
        raise BadRequest(str(e))
    except AgentNotFound as e:
        raise NotFound(str(e))
    return jsonify(result.to_dict()), 200


@calls_bp.get("")
@jwt_required()
def list_calls():
    user_id = current_user_id()
    limit, offset = parse_pagination()
    q = db.session.query(Call).filter(Call.user_id == user_id)
    contact_id = (request.args.get("contactId") or "").strip()
    if contact_id:
        q = q.filter(Call.contact_id == contact_id)
    total = q.count()
    rows = q.order_by(Call.created_at.desc()).limit(limit).offset(offset).all()
    return ok([c.to_dict() for c in rows], meta={"total": total, "limit": limit, "offset": offset})
