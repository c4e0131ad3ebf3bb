from sqlalchemy import Column, String, DateTime, Text, Boolean
from sqlalchemy.dialects.postgresql import UUID
import uuid
from datetime import datetime
from enrollpay.db.session import Base


class Policy(Base):
    __tablename__ = "policies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    terms_url = Column(Text, nullable=False)
    privacy_url = Column(Text, nullable=True)
    version = Column(String, nullable=False)
    terms_text = Column(Text, nullable=True)  # HTML from the policy editor
    privacy_text = Column(Text, nullable=True)
    terms_content_hash = Column(String(64), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
