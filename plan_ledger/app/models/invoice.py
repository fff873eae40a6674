"""
Invoice database models.

The invoice is the ledger aggregate for one purchase and the unit that is
synced to the external accounting system.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Enum, Text,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base
from plan_ledger.app.models.ledger_enums import (
    InvoiceSyncStatus, PlanStatus, SourceType, LineItemType,
)


class Invoice(Base):
    """
    Invoice model.

    Amounts are integer minor currency units.
    net_amount = total_amount - discount_amount, and nothing is ever negative.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_invoice_total_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_invoice_discount_non_negative"),
        CheckConstraint("net_amount >= 0", name="ck_invoice_net_non_negative"),
        CheckConstraint("paid_amount >= 0", name="ck_invoice_paid_non_negative"),
        CheckConstraint("net_amount = total_amount - discount_amount", name="ck_invoice_net_amount"),
        UniqueConstraint("source_type", "source_id", name="uq_invoice_source"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Accounting system identity (null until synced)
    external_id = Column(String(100), nullable=True, unique=True)
    invoice_number = Column(String(50), nullable=True)

    # Ownership and source purchase
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_type = Column(Enum(SourceType), nullable=False)
    source_id = Column(String(100), nullable=False)

    # Financials
    total_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    net_amount = Column(Integer, nullable=False)
    paid_amount = Column(Integer, nullable=False, default=0)

    # Free payment for zero-amount purchases
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)

    # Payment plan
    is_payment_plan = Column(Boolean, default=False, nullable=False)
    plan_status = Column(Enum(PlanStatus), default=PlanStatus.ACTIVE, nullable=False, index=True)
    cancellation_reason = Column(Text, nullable=True)

    # Sync state
    sync_status = Column(Enum(InvoiceSyncStatus), default=InvoiceSyncStatus.STAGED, nullable=False, index=True)
    sync_error = Column(Text, nullable=True)
    sync_attempts = Column(Integer, default=0, nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    staged_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.id",
        lazy="selectin",
    )
    installments = relationship(
        "Installment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Installment.sequence_number",
        lazy="selectin",
    )

    @property
    def remaining_balance(self) -> int:
        return self.net_amount - self.paid_amount

    def __repr__(self):
        return f"<Invoice(id={self.id}, sync='{self.sync_status.value}', net={self.net_amount})>"


class InvoiceLineItem(Base):
    """
    One line on the accounting invoice. Discounts carry a negative line_amount.
    """
    __tablename__ = "invoice_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    line_item_type = Column(Enum(LineItemType), nullable=False)
    item_id = Column(String(100), nullable=True)
    description = Column(String(255), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_amount = Column(Integer, nullable=False)
    line_amount = Column(Integer, nullable=False)
    account_code = Column(String(20), nullable=True)

    invoice = relationship("Invoice", back_populates="line_items")

    def __repr__(self):
        return f"<InvoiceLineItem(id={self.id}, type='{self.line_item_type.value}', amount={self.line_amount})>"
