"""
Payment plan schemas.

Purchase input for staging, job results, and admin API bodies.
Amounts are integer minor currency units throughout.
"""

from pydantic import BaseModel, Field, model_validator
from datetime import date, datetime
from typing import Optional, List
from plan_ledger.app.models.ledger_enums import (
    SourceType, LineItemType, InstallmentStatus, InvoiceSyncStatus, PlanStatus,
    PaymentMethod, PaymentStatus,
)


class LineItemCreate(BaseModel):
    """One purchased item. Discounts are given on the purchase, not as items."""
    line_item_type: LineItemType
    description: str = Field(..., min_length=1, max_length=255)
    item_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    unit_amount: int = Field(..., ge=0)
    account_code: Optional[str] = None

    @model_validator(mode="after")
    def no_discount_items(self):
        if self.line_item_type == LineItemType.DISCOUNT:
            raise ValueError("Discounts are passed as discount_amount")
        return self

    @property
    def line_amount(self) -> int:
        return self.quantity * self.unit_amount


class PurchaseCreate(BaseModel):
    """Schema for staging a purchase."""
    user_id: int
    source_type: SourceType
    source_id: str = Field(..., min_length=1, max_length=100)
    line_items: List[LineItemCreate] = Field(..., min_length=1)
    discount_amount: int = Field(0, ge=0)
    discount_description: str = "Discount"
    discount_account_code: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return sum(item.line_amount for item in self.line_items)

    @property
    def net_amount(self) -> int:
        return self.total_amount - self.discount_amount


class PaymentResponse(BaseModel):
    id: int
    user_id: int
    amount: int
    payment_method: PaymentMethod
    gateway_transaction_ref: Optional[str]
    status: PaymentStatus
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class InstallmentResponse(BaseModel):
    id: int
    invoice_id: int
    sequence_number: int
    amount: int
    due_date: date
    status: InstallmentStatus
    attempt_count: int
    last_attempt_at: Optional[datetime]
    failure_reason: Optional[str]
    payment_id: Optional[int]
    payoff_payment_id: Optional[int]

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: int
    user_id: int
    source_type: SourceType
    source_id: str
    external_id: Optional[str]
    invoice_number: Optional[str]
    total_amount: int
    discount_amount: int
    net_amount: int
    paid_amount: int
    is_payment_plan: bool
    plan_status: PlanStatus
    cancellation_reason: Optional[str] = None
    sync_status: InvoiceSyncStatus
    sync_error: Optional[str]
    installments: List[InstallmentResponse] = []

    class Config:
        from_attributes = True


class PaymentPlanSummary(BaseModel):
    """What a member sees for one plan."""
    invoice_id: int
    source_type: SourceType
    source_id: str
    plan_status: PlanStatus
    total_amount: int
    paid_amount: int
    remaining_balance: int
    installments_paid: int
    installments_total: int
    next_due_date: Optional[date]
    next_amount: Optional[int]
    installments: List[InstallmentResponse]


class ProcessingResult(BaseModel):
    """Outcome counts for one processor run."""
    found: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    retries_attempted: int = 0
    completion_notifications: int = 0
    exhausted: int = 0
    errors: List[str] = []


class PreNotificationResult(BaseModel):
    notify_date: date
    found: int = 0
    sent: int = 0
    errors: List[str] = []


class RecoveryResult(BaseModel):
    found: int = 0
    recovered_paid: int = 0
    released: int = 0
    unresolved: int = 0
    errors: List[str] = []


class SyncResult(BaseModel):
    """Outcome counts for one reconciliation sync run."""
    synced: int = 0
    failed: int = 0
    retained: int = 0
    errors: List[str] = []


class DailyJobsResponse(BaseModel):
    recovery: RecoveryResult
    processing: ProcessingResult
    pre_notifications: PreNotificationResult


class RunPaymentPlansRequest(BaseModel):
    as_of: Optional[date] = None
    installment_id: Optional[int] = None


class CancelPlanRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RescheduleRequest(BaseModel):
    start_date: date


class SyncResetRequest(BaseModel):
    invoice_ids: Optional[List[int]] = None
    installment_ids: Optional[List[int]] = None


class SyncResetResponse(BaseModel):
    invoices_reset: int
    installments_reset: int


class OutstandingBalanceResponse(BaseModel):
    user_id: int
    outstanding_balance: int
