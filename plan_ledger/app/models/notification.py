"""
Notification Database Model.

Outbound emails staged for the delivery worker.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Enum
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base
import enum


class NotificationEvent(str, enum.Enum):
    PAYMENT_PLAN_PAYMENT_PROCESSED = "payment_plan_payment_processed"
    PAYMENT_PLAN_PAYMENT_FAILED = "payment_plan_payment_failed"
    PAYMENT_PLAN_COMPLETED = "payment_plan_completed"
    PAYMENT_PLAN_PRE_NOTIFICATION = "payment_plan_pre_notification"
    PAYMENT_PLAN_RETRIES_EXHAUSTED = "payment_plan_retries_exhausted"
    PAYMENT_PLAN_EARLY_PAYOFF = "payment_plan_early_payoff"


class NotificationStatus(str, enum.Enum):
    STAGED = "staged"
    SENT = "sent"
    FAILED = "failed"


class Notification(Base):
    """
    Staged email.
    The delivery worker owns everything after STAGED.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    email_address = Column(String(255), nullable=False)

    # Content
    event_type = Column(String(100), nullable=False, index=True)
    template_data = Column(JSON, nullable=True)

    # State
    status = Column(Enum(NotificationStatus), default=NotificationStatus.STAGED, nullable=False, index=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, to='{self.email_address}', event='{self.event_type}')>"
