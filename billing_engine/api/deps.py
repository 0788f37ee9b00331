import hmac
import uuid

from fastapi import Header, HTTPException

from billing_engine.config import settings
from billing_engine.db import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    """The authenticated user, as forwarded by the gateway in front of us."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")


def require_operator(
    x_billing_sweep_token: str | None = Header(default=None),
) -> None:
    """Operator routes share the sweep token; unset token disables them."""
    expected = settings.billing_sweep_token
    if not expected:
        raise HTTPException(status_code=503, detail="Operator token is not configured")
    if not x_billing_sweep_token or not hmac.compare_digest(
        x_billing_sweep_token, expected
    ):
        raise HTTPException(status_code=403, detail="Invalid operator token")


def get_actor_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID | None:
    if not x_user_id:
        return None
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        return None
