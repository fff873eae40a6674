"""
Audit Log Database Model.

Tracks operator and system actions against payment plans.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - PAYMENT_PLAN_CANCELLED / PAYMENT_PLAN_PAID_OFF
    - PAYMENT_PLAN_RESCHEDULED
    - INSTALLMENTS_PROCESSED_MANUALLY
    - ACCOUNTING_SYNC_RESET
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor = Column(String(100), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What it was performed on
    invoice_id = Column(Integer, index=True, nullable=True)
    installment_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', invoice={self.invoice_id})>"
