"""Subscription activation called by the payment webhook relay."""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ssbprep.config import settings
from ssbprep.db.database import get_db
from ssbprep.services.identity import Identity, is_guest_id
from ssbprep.services.ledger import activate_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


class ActivationRequest(BaseModel):
    """Request body sent by the relay once a payment is verified."""
    user_id: str = Field(..., min_length=1, max_length=64)
    payment_reference: Optional[str] = Field(None, max_length=128)


def verify_relay_secret(provided: Optional[str]) -> None:
    """Reject calls that do not carry the shared relay secret."""
    expected = settings.PAYMENT_RELAY_SECRET
    if not expected:
        logger.error("Subscription activation attempted but PAYMENT_RELAY_SECRET is not set")
        raise HTTPException(status_code=401, detail="Subscription activation is not enabled")
    if not provided or not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
        logger.warning("Subscription activation rejected: bad relay secret")
        raise HTTPException(status_code=401, detail="Invalid relay secret")


@router.post("/subscription/activate")
async def activate(
    activation: ActivationRequest,
    x_relay_secret: Optional[str] = Header(None),
    db: Session = Depends(get_db)
):
    """
    Elevate an account to the paid tier.

    Payment verification happens upstream; this endpoint trusts the relay
    and only updates limits.
    """
    verify_relay_secret(x_relay_secret)
    if is_guest_id(activation.user_id):
        raise HTTPException(status_code=400, detail="Guest identities cannot subscribe")

    identity = Identity.registered(activation.user_id)
    limits = activate_subscription(db, identity)
    logger.info(
        f"Subscription activated (reference={activation.payment_reference})",
        extra={"identity": identity.id}
    )
    return {"identity": identity.id, "subscription": "paid", "limits": limits}
