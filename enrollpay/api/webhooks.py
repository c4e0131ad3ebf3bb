"""
Stripe webhook endpoint.
Verification, idempotency and dispatch live in services.stripe_processor;
this module only hands over the raw body and collaborators.
"""
from fastapi import APIRouter, Request, Header, Depends
from sqlalchemy.orm import Session
from typing import Optional

from enrollpay.api.deps import get_db, get_crm_sync, get_storage, get_mailer
from enrollpay.services.stripe_processor import SettlementSideEffects, handle_webhook

router = APIRouter()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    crm=Depends(get_crm_sync),
    storage=Depends(get_storage),
    mailer=Depends(get_mailer),
):
    """
    Handle Stripe settlement events.

    - Verifies the signature against the raw body (400 when it fails)
    - Returns {"received": true, "duplicate": true} for replays
    - Errors while applying an event surface as 500 so Stripe retries
    """
    body = await request.body()
    result = handle_webhook(
        db,
        body,
        stripe_signature,
        SettlementSideEffects(crm=crm, storage=storage, mailer=mailer),
    )
    return result.to_response()
