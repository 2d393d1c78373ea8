"""
Access tokens for the operator API.

Tokens are minted out of band (an admin runs `create_access_token` for an
operator or for the worker) and only verified here. They carry the role
claim and are scoped to this service by issuer.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from indexer_agent.auth.roles import Role
from indexer_agent.config import settings

ALGORITHM = "HS256"
ISSUER = "indexer-agent"


def create_access_token(subject: str, role: Role | str, expires_minutes: int | None = None) -> str:
    if expires_minutes is None:
        expires_minutes = settings.access_token_expire_minutes
    now = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "role": role.value if isinstance(role, Role) else role,
        "iss": ISSUER,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
        "type": "access",
    }
    return jwt.encode(claims, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and issuer. Raises JWTError on any failure."""
    claims = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM], issuer=ISSUER)
    if claims.get("type") != "access":
        raise JWTError("Not an access token")
    return claims
