# Organization-role checks for admin endpoints

from functools import wraps
from typing import Any, Dict, Iterable, Set
from flask_jwt_extended import jwt_required, get_jwt, get_jwt_identity
from admin.errors import Unauthorized

ADMIN_ROLE = "org:admin"
ROLES_CLAIM = "org_roles"

def roles_from_claims(claims: Dict[str, Any]) -> Set[str]:
    """
    The identity provider puts organization memberships in the token as
    either a list of role names or a {org_id: role} mapping.
    """
    payload = (claims or {}).get(ROLES_CLAIM) or []
    if isinstance(payload, dict):
        return {str(v) for v in payload.values() if v}
    if isinstance(payload, str):
        return {payload}
    if isinstance(payload, Iterable):
        return {str(r) for r in payload if r}
    return set()

def caller_is_admin() -> bool:
    return ADMIN_ROLE in roles_from_claims(get_jwt())

def authenticated(fn):
    """
    JWT required; the admin decision is left to the service so it can refuse
    before any provider call.
    """
    @wraps(fn)
    @jwt_required()
    def wrapper(*args, **kwargs):
        if not get_jwt_identity():
            raise Unauthorized("Missing identity")
        return fn(*args, **kwargs)
    return wrapper
