"""Identity bootstrap, registration and device endpoints."""
import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ssbprep.config import settings
from ssbprep.constants import IDENTITY_COOKIE_NAME, REGISTRATION_RATE_LIMIT
from ssbprep.db.database import get_db, read_with_retry, write_transaction
from ssbprep.db.models import UserAccount
from ssbprep.errors import PersistenceError
from ssbprep.limiter import limiter
from ssbprep.services.fingerprint import (
    FINGERPRINT_SIGNALS,
    check_device_limit,
    check_guest_device_limit,
    compute_fingerprint,
    has_sighting,
    list_devices,
    record_sighting,
)
from ssbprep.services.identity import Identity, generate_user_id, is_guest_id
from ssbprep.services.ledger import get_limits, has_active_subscription, withhold_guest_attempts
from ssbprep.services.streaks import get_streak, record_login

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["user"])


class DeviceSignals(BaseModel):
    """Client environment signals used for the device fingerprint."""
    user_agent: Optional[str] = Field(None, max_length=512)
    screen_resolution: Optional[str] = Field(None, max_length=32)
    timezone: Optional[str] = Field(None, max_length=64)
    language: Optional[str] = Field(None, max_length=32)
    platform: Optional[str] = Field(None, max_length=64)
    canvas_signature: Optional[str] = Field(None, max_length=256)
    cookie_enabled: Optional[bool] = None
    do_not_track: Optional[str] = Field(None, max_length=16)

    def as_signals(self) -> Dict:
        return {name: getattr(self, name) for name in FINGERPRINT_SIGNALS}


class RegistrationRequest(BaseModel):
    """Request body for creating a registered account."""
    display_name: str = Field(..., min_length=1, max_length=80)
    city: Optional[str] = Field(None, max_length=80)
    device: Optional[DeviceSignals] = None

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v):
        """Validate that display_name is not whitespace."""
        if not v.strip():
            raise ValueError("display_name cannot be empty")
        return v.strip()


def resolve_identity(request: Request, db: Session) -> Identity:
    """
    Work out who is calling.

    A cookie naming an existing account wins; anything else falls back to the
    guest identity held in the browser session, created on first use.
    """
    user_id = request.cookies.get(IDENTITY_COOKIE_NAME)
    if user_id and not is_guest_id(user_id):
        account = read_with_retry(
            db,
            lambda: db.query(UserAccount).filter(UserAccount.id == user_id).first(),
            "account lookup"
        )
        if account:
            return Identity.registered(user_id)
        logger.info("Identity cookie names an unknown account, using guest identity")
    return Identity.guest(request.session)


def get_identity(request: Request, db: Session = Depends(get_db)) -> Identity:
    """FastAPI dependency resolving the caller's identity."""
    return resolve_identity(request, db)


def set_identity_cookie(response: Response, user_id: str) -> None:
    response.set_cookie(
        key=IDENTITY_COOKIE_NAME,
        value=user_id,
        max_age=settings.COOKIE_MAX_AGE,
        httponly=settings.COOKIE_HTTPONLY,
        samesite=settings.COOKIE_SAMESITE,
        secure=settings.COOKIE_SECURE
    )


@router.get("/bootstrap")
async def bootstrap(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """
    Bootstrap the caller's identity and return initial data.

    Returns:
    - Identity and whether it is a guest
    - Remaining attempts per test bucket
    - Subscription state
    - Streak summary (registered identities also get their login streak updated)
    """
    login = None
    if not identity.is_guest:
        with write_transaction(db, "last active update"):
            db.query(UserAccount).filter(UserAccount.id == identity.id).update(
                {UserAccount.last_active_at: datetime.utcnow()},
                synchronize_session=False
            )
        try:
            login = record_login(db, identity)
        except PersistenceError:
            logger.error("Login streak update failed", extra={"identity": identity.id})

    return {
        "identity": identity.id,
        "is_guest": identity.is_guest,
        "limits": get_limits(db, identity),
        "subscription": "paid" if has_active_subscription(db, identity) else "unpaid",
        "streak": get_streak(db, identity),
        "login": login,
    }


@router.post("/user/register", status_code=201)
@limiter.limit(REGISTRATION_RATE_LIMIT)
async def register(
    registration: RegistrationRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Create a registered account and bind it to this browser.

    The device fingerprint check is advisory: it caps casual multi-account
    creation from one browser. Guest attempts are not carried over.
    """
    fingerprint = None
    signals = {}
    if registration.device is not None:
        signals = registration.device.as_signals()
        fingerprint = compute_fingerprint(signals)
        device_check = check_device_limit(db, fingerprint)
        if not device_check.allowed:
            logger.warning(
                f"Registration refused, device already has {device_check.account_count} accounts"
            )
            raise HTTPException(status_code=403, detail="Too many accounts created from this device")

    user_id = generate_user_id()
    with write_transaction(db, "account registration"):
        db.add(UserAccount(
            id=user_id,
            display_name=registration.display_name,
            city=registration.city
        ))

    identity = Identity.registered(user_id)
    if fingerprint:
        record_sighting(db, identity, fingerprint, signals)

    set_identity_cookie(response, user_id)
    logger.info("Account registered", extra={"identity": user_id})

    return {
        "identity": user_id,
        "display_name": registration.display_name,
        "limits": get_limits(db, identity),
    }


@router.post("/user/device")
async def record_device(
    device: DeviceSignals,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """
    Record that the caller was seen on this device.

    A guest new to a device that already hosted too many guests starts with
    no attempts. Like the account cap this is advisory.
    """
    signals = device.as_signals()
    fingerprint = compute_fingerprint(signals)

    guest_limited = False
    if identity.is_guest and not has_sighting(db, identity, fingerprint):
        guest_check = check_guest_device_limit(db, fingerprint)
        if not guest_check.allowed:
            logger.warning(
                f"Device already hosted {guest_check.account_count} guests",
                extra={"identity": identity.id}
            )
            withhold_guest_attempts(identity)
            guest_limited = True

    recorded = record_sighting(db, identity, fingerprint, signals)
    return {"fingerprint_hash": fingerprint, "recorded": recorded, "guest_limited": guest_limited}


@router.get("/user/devices")
async def get_devices(
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db)
):
    """List device sightings for the caller, newest first."""
    return {"identity": identity.id, "devices": list_devices(db, identity)}
