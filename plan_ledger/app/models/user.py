"""
User database model.

Only the fields the billing engine reads: contact details for notifications,
the saved gateway payment method and the accounting contact mapping.
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from plan_ledger.app.db.session import Base


class User(Base):
    """
    User model.

    A saved payment method is usable only when payment_method_status is
    "succeeded" (the setup flow completed).
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)

    # Payment gateway
    gateway_customer_id = Column(String(100), nullable=True)
    gateway_payment_method_id = Column(String(100), nullable=True)
    payment_method_status = Column(String(30), nullable=True)

    # Accounting system contact (cached once resolved)
    accounting_contact_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or self.email

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"
