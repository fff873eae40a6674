"""
Installment database model.

One scheduled charge within a payment plan. Also the accounting line that
records that charge against the synced invoice.
"""

from sqlalchemy import (
    Column, Integer, String, Date, DateTime, ForeignKey, Enum, Text,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base
from plan_ledger.app.models.ledger_enums import InstallmentStatus


class Installment(Base):
    """
    Installment model.

    payment_id is unique: a Payment created by charging an installment is
    linked from exactly that installment. Installments settled together by an
    early payoff share payoff_payment_id instead.
    """
    __tablename__ = "installments"
    __table_args__ = (
        UniqueConstraint("invoice_id", "sequence_number", name="uq_installment_sequence"),
        CheckConstraint("amount >= 0", name="ck_installment_amount_non_negative"),
        CheckConstraint("sequence_number >= 1", name="ck_installment_sequence_positive"),
        CheckConstraint("attempt_count >= 0", name="ck_installment_attempts_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    sequence_number = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False, index=True)

    status = Column(Enum(InstallmentStatus), default=InstallmentStatus.STAGED, nullable=False, index=True)

    # Processing attempts
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    # Key of an attempt whose gateway outcome is not recorded yet
    in_flight_idempotency_key = Column(String(100), nullable=True)

    # Money movement
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)
    payoff_payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)

    # Accounting sync
    external_id = Column(String(100), nullable=True, unique=True)
    sync_error = Column(Text, nullable=True)
    sync_attempts = Column(Integer, default=0, nullable=False)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    invoice = relationship("Invoice", back_populates="installments")
    payment = relationship("Payment", foreign_keys=[payment_id])
    payoff_payment = relationship("Payment", foreign_keys=[payoff_payment_id])

    @property
    def settling_payment_id(self):
        return self.payment_id or self.payoff_payment_id

    def __repr__(self):
        return (
            f"<Installment(id={self.id}, invoice={self.invoice_id}, seq={self.sequence_number}, "
            f"status='{self.status.value}', attempts={self.attempt_count})>"
        )
