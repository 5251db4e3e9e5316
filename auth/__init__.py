from __future__ import annotations
from flask_jwt_extended import get_jwt_identity


def current_user_id() -> int:
    """JWT identities are issued as str(user.id)."""
    return int(get_jwt_identity())
