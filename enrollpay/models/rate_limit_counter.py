from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint
from datetime import datetime
from enrollpay.db.session import Base


class RateLimitCounter(Base):
    """Fixed-window request counter shared by every app instance."""
    __tablename__ = "rate_limit_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String, nullable=False)  # e.g. "resolve_enrollment:203.0.113.7"
    window_start = Column(DateTime, nullable=False, index=True)
    count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("key", "window_start", name="uq_rate_limit_counters_key_window"),
    )
