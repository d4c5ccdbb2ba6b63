import hmac
import os

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from harbor_billing.config import settings
from harbor_billing.db import SessionLocal
from harbor_billing.services.processors import (
    PaymentProcessor,
    configured_processors,
    get_payment_processor,
)
from harbor_billing.services.store import BillingStore


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)) -> BillingStore:
    return BillingStore(db)


def get_processor_factory():
    """Return the callable that resolves a processor by name."""
    return get_payment_processor


def get_sweep_processors() -> list[PaymentProcessor]:
    return configured_processors()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _decode_access_token(token: str) -> dict:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(
            token, secret, algorithms=[os.getenv("JWT_ALGORITHM", "HS256")]
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ", "access") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = _decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    roles_value = payload.get("roles")
    roles = [str(role) for role in roles_value] if isinstance(roles_value, list) else []
    if request is not None:
        request.state.actor_id = str(user_id)
    return {"user_id": str(user_id), "roles": roles}


def require_role(role_name: str):
    def _require_role(auth=Depends(require_user_auth)):
        if role_name not in set(auth.get("roles") or []):
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth

    return _require_role


def require_job_token(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    """Allow the scheduler's shared token, or an admin JWT."""
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    job_token = settings.renewal_job_token
    if job_token and hmac.compare_digest(token, job_token):
        if request is not None:
            request.state.actor_id = "scheduler"
        return {"user_id": None, "roles": ["scheduler"]}
    auth = require_user_auth(authorization, request)
    if "admin" not in auth["roles"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    return auth
