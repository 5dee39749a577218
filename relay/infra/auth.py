from __future__ import annotations
import hmac
import re
from typing import Optional
import jwt
from fastapi import HTTPException, Request
from relay.settings import settings

ROLE_OPERATOR = "operator"
ROLE_VIEWER = "viewer"
ROLE_EDGE = "edge"

AGENT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

def _roles_from_scope(scope: str) -> list[str]:
    return [s.strip() for s in (scope or "").split() if s.strip()]

def require_auth(request: Request) -> dict:
    if settings.AUTH_MODE == "none":
        return {"sub": "dev-user", "roles": [ROLE_OPERATOR, ROLE_VIEWER, ROLE_EDGE]}
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    token = auth[len("Bearer "):].strip()
    try:
        claims = jwt.decode(
            token,
            settings.JWT_HS256_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUD,
            issuer=settings.JWT_ISS,
        )
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")
    roles = claims.get("roles")
    if not roles:
        claims["roles"] = _roles_from_scope(claims.get("scope", ""))
    return claims

def require_role(claims: dict, allowed_roles: list[str]) -> None:
    roles = claims.get("roles") or []
    if not any(r in roles for r in allowed_roles):
        raise HTTPException(status_code=403, detail="Forbidden: insufficient role")

def extract_bearer(authorization: Optional[str], query_token: Optional[str] = None) -> Optional[str]:
    """Bearer token from the Authorization header, falling back to ?token=."""
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip()
    return query_token or None

def validate_tunnel_token(token: Optional[str], expected: str) -> bool:
    # No configured secret means nobody gets in.
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))

def is_valid_agent_id(agent_id: Optional[str]) -> bool:
    return bool(agent_id) and AGENT_ID_RE.match(agent_id) is not None
