import os
import time
import logging
from typing import Optional, Dict, Any, Tuple

import jwt

logger = logging.getLogger(__name__)


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret"


def create_vendor_token(vendor_id: int, ttl_seconds: int = 60 * 60 * 24 * 7) -> str:
    now = int(time.time())
    payload = {
        "sub": str(vendor_id),
        "iat": now,
        "exp": now + ttl_seconds,
        "type": "access",
        "role": "vendor",
    }
    return jwt.encode(payload, _secret(), algorithm="HS256")


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.debug("token_rejected err=%s", e.__class__.__name__)
        return None


def parse_auth_header(auth_header: str) -> Tuple[Optional[str], Optional[str]]:
    if not auth_header:
        return None, None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1], "bearer"
    return None, None


def get_bearer_token(auth_header: str) -> Optional[str]:
    token, _scheme = parse_auth_header(auth_header)
    return token


def vendor_id_from_header(auth_header: str) -> Optional[int]:
    token = get_bearer_token(auth_header)
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
