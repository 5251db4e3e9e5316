from __future__ import annotations
from typing import Any, Dict, Optional
import requests
from flask import current_app


class VapiError(Exception):
    """Call placement failed: HTTP error from Vapi, timeout, or connection failure."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def build_call_request(agent_id: str, phone_number_id: str, e164_number: str, contact: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "assistantId": agent_id,
        "phoneNumberId": phone_number_id,
        "customer": {"number": e164_number},
        "assistantOverrides": {
            "variableValues": {
                "name": contact.get("name") or "",
                "phone_number": contact.get("phone_number") or "",
                "email": contact.get("email") or "",
                "info": contact.get("info") or "",
            },
        },
    }


def create_phone_call(body: Dict[str, Any]) -> Dict[str, Any]:
    """POST /call/phone. Returns the Vapi call object; raises VapiError on any failure."""
    api_key = current_app.config.get("VAPI_PRIVATE_KEY")
    if not api_key:
        raise VapiError("VAPI_PRIVATE_KEY is not configured")
    base_url = current_app.config.get("VAPI_BASE_URL", "https://api.vapi.ai").rstrip("/")
    timeout = float(current_app.config.get("VAPI_TIMEOUT_SECONDS", 30))

    try:
        r = requests.post(
            f"{base_url}/call/phone",
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )
    except requests.Timeout:
        raise VapiError(f"Vapi request timed out after {timeout:g}s")
    except requests.RequestException as e:
        raise VapiError(f"Vapi request failed: {e}")

    try:
        data = r.json()
    except ValueError:
        data = {"message": r.text[:500]}

    if not r.ok:
        message = data.get("message") if isinstance(data, dict) else None
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        raise VapiError(message or "Unknown error", status_code=r.status_code, payload=data)
    if not isinstance(data, dict) or not data.get("id"):
        raise VapiError("Vapi response did not include a call id", status_code=r.status_code, payload=data)
    return data
