import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

# get from env
PAYOS_CHECKSUM_KEY = os.getenv("PAYOS_CHECKSUM_KEY", "payos_checksum_key")  # noqa: S105
SYNC_JOB_SECRET = os.getenv("SYNC_JOB_SECRET", "sync_job_secret")  # noqa: S105
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "supabase_jwt_secret")  # noqa: S105
SUPABASE_JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
JWT_ALGORITHM = "HS256"


def _signature_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def payos_signature_payload(data: Dict[str, Any]) -> str:
    """PayOS signs the data object as sorted `key=value` pairs joined by `&`."""
    return "&".join(f"{key}={_signature_value(data[key])}" for key in sorted(data))


def calculate_payos_signature(data: Dict[str, Any], key: str = PAYOS_CHECKSUM_KEY) -> str:
    return hmac.new(
        key.encode(), payos_signature_payload(data).encode(), hashlib.sha256
    ).hexdigest()


async def verify_payos_signature(request: Request) -> Dict[str, Any]:
    """
    Verify a PayOS webhook body (HMAC-SHA256 over `data`, compared with
    `signature`) and hand the parsed body to the route.
    """
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes)
    except ValueError as err:
        logger.warning(" [Webhook] body is not valid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON body") from err

    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook body")

    signature = body.get("signature")
    data = body.get("data")
    if not signature or not isinstance(data, dict):
        logger.warning(" [Webhook] signature or data is missing")
        raise HTTPException(status_code=403, detail="Webhook signature is required")

    expected_signature = calculate_payos_signature(data)
    if not hmac.compare_digest(str(signature), expected_signature):
        logger.error(" [Webhook] signature is invalid")
        raise HTTPException(status_code=403, detail="Webhook signature is invalid")
    return body


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer ") :].strip()
    return token or None


async def verify_sync_token(request: Request) -> bool:
    """Shared-secret bearer guard for the administrative job endpoints."""
    token = _bearer_token(request)
    if token is None:
        logger.warning(" Authorization header is missing")
        raise HTTPException(status_code=401, detail="Bearer token is required")

    if not hmac.compare_digest(token, SYNC_JOB_SECRET):
        logger.error(" Sync job token is invalid")
        raise HTTPException(status_code=403, detail="Invalid sync job token")
    return True


def decode_access_token(token: str) -> Dict[str, Any]:
    """Validate a Supabase access token and return its claims."""
    try:
        return jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            audience=SUPABASE_JWT_AUDIENCE,
        )
    except JWTError as err:
        logger.warning(f" Invalid access token: {err}")
        raise HTTPException(status_code=401, detail="Invalid token") from err


async def get_token_claims(request: Request) -> Dict[str, Any]:
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized - Please login")
    claims = decode_access_token(token)
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims
