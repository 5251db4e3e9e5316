from typing import Any, Dict, Iterable, Optional, Tuple
from flask import request, jsonify
from common.errors import BadRequest, Unprocessable

def ok(data: Any = None, meta: Optional[Dict[str, Any]] = None, status: int = 200):
    return jsonify({"ok": True, "data": data, "meta": meta or {}}), status

def get_json(*, required: Iterable[str] = ()):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Invalid JSON in request body")
    missing = [k for k in required if not data.get(k)]
    if missing:
        raise Unprocessable("Missing required fields", details={"fields": missing})
    return data

def parse_pagination(default_limit: int = 50, max_limit: int = 200) -> Tuple[int, int]:
    limit = request.args.get("limit", default=default_limit, type=int)
    offset = request.args.get("offset", default=0, type=int)
    if offset < 0:
        raise Unprocessable("offset must be >= 0")
    limit = max(1, min(limit, max_limit))
    return limit, offset
