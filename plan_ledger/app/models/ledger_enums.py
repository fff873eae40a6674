"""
Ledger enumerations.
"""

import enum


class InvoiceSyncStatus(str, enum.Enum):
    """Invoice accounting-sync status enumeration."""
    DRAFT = "draft"  # Created by checkout, not yet committed to a purchase
    STAGED = "staged"  # Durably recorded, waiting for money to move
    PENDING = "pending"  # Ready to push to the accounting system
    SYNCED = "synced"  # Accepted by the accounting system
    FAILED = "failed"  # Rejected by the accounting system


class InstallmentStatus(str, enum.Enum):
    """Installment processing/sync status enumeration."""
    STAGED = "staged"
    PLANNED = "planned"
    PROCESSING = "processing"  # Claimed by a processor run
    PENDING = "pending"  # Charged, waiting for accounting sync
    SYNCED = "synced"
    FAILED = "failed"  # Cancelled or rejected, never charged again automatically


class PlanStatus(str, enum.Enum):
    """Payment plan status enumeration."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "gateway"
    FREE = "free"


class ChargeStatus(str, enum.Enum):
    """Terminal outcomes reported by the payment gateway."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


class SourceType(str, enum.Enum):
    """What kind of purchase an invoice pays for."""
    REGISTRATION = "registration"
    MEMBERSHIP = "membership"


class LineItemType(str, enum.Enum):
    REGISTRATION = "registration"
    MEMBERSHIP = "membership"
    DISCOUNT = "discount"
    DONATION = "donation"


# Installment states an early payoff settles.
OUTSTANDING_INSTALLMENT_STATUSES = (InstallmentStatus.PLANNED, InstallmentStatus.FAILED)
