"""Device fingerprinting used as an abuse heuristic for account creation.

The signals are supplied by the client, so every check here is advisory:
anyone who controls their browser can change the fingerprint. Nothing in this
module is a security gate. It only caps casual multi-account creation and
repeated guest sessions from one device.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ssbprep.constants import GUEST_ID_PREFIX, MAX_ACCOUNTS_PER_DEVICE, MAX_GUESTS_PER_DEVICE
from ssbprep.db.models import DeviceFingerprint
from ssbprep.services.identity import Identity

logger = logging.getLogger(__name__)

FINGERPRINT_SIGNALS = (
    "user_agent",
    "screen_resolution",
    "timezone",
    "language",
    "platform",
    "canvas_signature",
    "cookie_enabled",
    "do_not_track",
)
"""Environment signals that contribute to the device hash."""


@dataclass(frozen=True)
class DeviceLimitResult:
    allowed: bool
    account_count: int


def compute_fingerprint(signals: Mapping[str, object]) -> str:
    """
    Derive a fixed-length, non-reversible device signature.

    Only the known signals are used, serialized as canonical JSON, so the
    hash is deterministic for one browser configuration and changes when any
    contributing signal changes.

    Args:
        signals: Client environment signals keyed by name

    Returns:
        64-character SHA-256 hex digest
    """
    canonical = {name: signals.get(name) for name in FINGERPRINT_SIGNALS}
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def record_sighting(
    db: Session,
    identity: Identity,
    fingerprint: str,
    signals: Mapping[str, object] = None,
) -> bool:
    """
    Upsert the (device, identity) pairing and bump its last-seen time.

    Failures are logged and rolled back, never raised: this is telemetry.

    Returns:
        True if the sighting was stored
    """
    signals = signals or {}
    try:
        existing = db.query(DeviceFingerprint).filter(
            DeviceFingerprint.fingerprint_hash == fingerprint,
            DeviceFingerprint.identity == identity.id
        ).first()

        if existing:
            existing.last_seen_at = datetime.utcnow()
        else:
            db.add(DeviceFingerprint(
                fingerprint_hash=fingerprint,
                identity=identity.id,
                user_agent=signals.get("user_agent"),
                screen_resolution=signals.get("screen_resolution"),
                timezone=signals.get("timezone"),
            ))
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Error recording device fingerprint: {e}",
            exc_info=True,
            extra={"identity": identity.id}
        )
        return False


def _count_identities(db: Session, fingerprint: str, guests: bool) -> int:
    is_guest = DeviceFingerprint.identity.startswith(GUEST_ID_PREFIX, autoescape=True)
    return db.query(
        func.count(func.distinct(DeviceFingerprint.identity))
    ).filter(
        DeviceFingerprint.fingerprint_hash == fingerprint,
        is_guest if guests else ~is_guest
    ).scalar() or 0


def check_device_limit(db: Session, fingerprint: str) -> DeviceLimitResult:
    """
    Count distinct registered identities ever seen on a fingerprint.

    Fails open on lookup errors, since the check is advisory.
    """
    try:
        account_count = _count_identities(db, fingerprint, guests=False)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Device limit check failed, allowing: {e}")
        return DeviceLimitResult(allowed=True, account_count=0)

    return DeviceLimitResult(
        allowed=account_count < MAX_ACCOUNTS_PER_DEVICE,
        account_count=account_count
    )


def check_guest_device_limit(db: Session, fingerprint: str) -> DeviceLimitResult:
    """
    Count distinct guest identities ever seen on a fingerprint.

    A fresh browser session mints a new guest, so this is the only signal
    that ties repeated guests to one device. Advisory and fails open.
    """
    try:
        guest_count = _count_identities(db, fingerprint, guests=True)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Guest device check failed, allowing: {e}")
        return DeviceLimitResult(allowed=True, account_count=0)

    return DeviceLimitResult(
        allowed=guest_count < MAX_GUESTS_PER_DEVICE,
        account_count=guest_count
    )


def has_sighting(db: Session, identity: Identity, fingerprint: str) -> bool:
    """Whether this identity was already seen on the device. Errors read as seen."""
    try:
        return db.query(DeviceFingerprint.id).filter(
            DeviceFingerprint.fingerprint_hash == fingerprint,
            DeviceFingerprint.identity == identity.id
        ).first() is not None
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Sighting lookup failed: {e}", extra={"identity": identity.id})
        return True


def list_devices(db: Session, identity: Identity) -> List[Dict]:
    """Device sightings for an identity, newest first."""
    rows = db.query(DeviceFingerprint).filter(
        DeviceFingerprint.identity == identity.id
    ).order_by(DeviceFingerprint.created_at.desc(), DeviceFingerprint.id.desc()).all()

    return [
        {
            "fingerprint_hash": row.fingerprint_hash,
            "user_agent": row.user_agent,
            "screen_resolution": row.screen_resolution,
            "timezone": row.timezone,
            "created_at": row.created_at.isoformat(),
            "last_seen_at": row.last_seen_at.isoformat(),
        }
        for row in rows
    ]
