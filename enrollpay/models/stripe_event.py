from sqlalchemy import Column, String, DateTime
from datetime import datetime
from enrollpay.db.session import Base


class ProcessedStripeEvent(Base):
    """
    Idempotency ledger for Stripe webhook deliveries.

    A row is written only after every effect of the event has been applied,
    so a crash before the insert leads to a safe reprocessing on retry.
    """
    __tablename__ = "processed_stripe_events"

    stripe_event_id = Column(String, primary_key=True)  # evt_...
    event_type = Column(String, nullable=True, index=True)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
