"""
Payment database model.

Immutable record of money having actually moved.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, CheckConstraint
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base
from plan_ledger.app.models.ledger_enums import PaymentStatus, PaymentMethod


class Payment(Base):
    """
    Payment model.

    Created only once the gateway reports success, or immediately for
    zero-amount purchases. NO updates once completed: a refund is a new row
    pointing back through refund_of_payment_id.
    """
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Financials
    amount = Column(Integer, nullable=False)
    payment_method = Column(Enum(PaymentMethod), default=PaymentMethod.GATEWAY, nullable=False)
    gateway_transaction_ref = Column(String(100), nullable=True, unique=True)

    status = Column(Enum(PaymentStatus), default=PaymentStatus.COMPLETED, nullable=False, index=True)
    refund_of_payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    # Timestamps (Immutable - no updated_at)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Payment(id={self.id}, status='{self.status.value}', amount={self.amount})>"
