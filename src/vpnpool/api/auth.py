import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession

from vpnpool.common import audit, settings
from vpnpool.common.db.connection import get_session
from vpnpool.common.db.models import EventOutcome, EventType, Owner, hash_api_key

logger = logging.getLogger(__name__)


def get_api_key(request: Request) -> str | None:
    """Get the API key from the configured header, falling back to a bearer token"""
    if api_key := request.headers.get(settings.API_KEY_HEADER_NAME):
        return api_key
    bearer = request.headers.get("Authorization", "").split(" ")
    if len(bearer) == 2 and bearer[0].lower() == "bearer":
        return bearer[1]
    return None


def get_source_ip(request: Request) -> str | None:
    if settings.TRUST_FORWARDED_FOR:
        if forwarded := request.headers.get("X-Forwarded-For"):
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def authenticate_owner(api_key: str, db: DBSession) -> Owner | None:
    return db.scalar(select(Owner).where(Owner.api_key_hash == hash_api_key(api_key)))


def get_current_owner(request: Request, db: DBSession = Depends(get_session)) -> Owner:
    """FastAPI dependency to get the owner behind the request's API key"""
    source_ip = get_source_ip(request)
    api_key = get_api_key(request)
    owner = api_key and authenticate_owner(api_key, db)
    if not owner:
        audit.record_event(
            db,
            EventType.AUTH_FAILURE,
            EventOutcome.FAILURE,
            "Missing or invalid API key",
            source_ip=source_ip,
            metadata={"path": request.url.path},
        )
        db.commit()
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

    if not owner.is_active:
        audit.record_event(
            db,
            EventType.AUTH_FAILURE,
            EventOutcome.FAILURE,
            "Owner account is disabled",
            owner_id=owner.id,
            source_ip=source_ip,
        )
        db.commit()
        raise HTTPException(status_code=403, detail="Owner account is disabled")

    audit.record_event(
        db,
        EventType.AUTH_SUCCESS,
        EventOutcome.SUCCESS,
        f"Authenticated {owner.name}",
        owner_id=owner.id,
        source_ip=source_ip,
        metadata={"path": request.url.path},
    )
    db.commit()
    return owner
