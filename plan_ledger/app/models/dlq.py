"""
Dead Letter Queue (DLQ) Model.

Stores failures that automatic processing will not resolve on its own:
installments out of retries, charges whose outcome is in doubt, and
records the accounting system rejected.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base
import enum


class DLQStatus(str, enum.Enum):
    FAILED = "FAILED"  # Waiting for an operator
    PROCESSED = "PROCESSED"  # Fixed by hand
    ARCHIVED = "ARCHIVED"  # Gave up


class DLQTask:
    """Task names recorded in the dead letter queue."""
    INSTALLMENT_CHARGE = "installment_charge"
    INSTALLMENT_CHARGE_IN_DOUBT = "installment_charge_in_doubt"
    ACCOUNTING_SYNC = "accounting_sync"


class DeadLetterQueue(Base):
    """
    Dead Letter Queue table.

    payload carries the record identifiers (installment_id, invoice_id,
    idempotency_key) an operator needs to find the ledger rows.
    """
    __tablename__ = "dead_letter_queue"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    task_name = Column(String(100), nullable=False, index=True)
    error_message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    status = Column(Enum(DLQStatus), default=DLQStatus.FAILED, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<DLQ(id={self.id}, task='{self.task_name}', status='{self.status}')>"
