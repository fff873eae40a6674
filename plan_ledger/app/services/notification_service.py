"""
Notification Service.

Stages outbound emails in the notifications table. Delivery is someone
else's job; anything after STAGED is out of our hands.
"""

import logging
from typing import Optional, Dict, Any, List, Protocol, Callable

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plan_ledger.app.models.notification import Notification, NotificationStatus
from plan_ledger.app.models.user import User

logger = logging.getLogger("plan_ledger.notifications")


class Recipient(BaseModel):
    email: str
    name: Optional[str] = None
    user_id: Optional[int] = None

    @classmethod
    def for_user(cls, user: User) -> "Recipient":
        return cls(email=user.email, name=user.full_name, user_id=user.id)


class Notifier(Protocol):
    async def notify(self, event_type: str, recipient: Recipient, template_data: Dict[str, Any]) -> None:
        ...


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        event_type: str,
        recipient: Recipient,
        template_data: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single staged notification."""
        notif = Notification(
            user_id=recipient.user_id,
            email_address=recipient.email,
            event_type=event_type,
            template_data=template_data,
            status=NotificationStatus.STAGED,
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def list_staged(db: AsyncSession, event_type: Optional[str] = None) -> List[Notification]:
        query = select(Notification).where(Notification.status == NotificationStatus.STAGED)
        if event_type:
            query = query.where(Notification.event_type == event_type)
        result = await db.execute(query.order_by(Notification.id))
        return list(result.scalars().all())


class StagedEmailNotifier:
    """
    Default Notifier.

    Uses its own session so a notification never shares a transaction with
    the ledger write it reports on.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def notify(self, event_type: str, recipient: Recipient, template_data: Dict[str, Any]) -> None:
        async with self.session_factory() as session:
            await NotificationService.create_notification(session, event_type, recipient, template_data)
            await session.commit()
        logger.debug("Notification staged", extra={"event_type": event_type, "email": recipient.email})


async def notify_safely(
    notifier: Notifier,
    event_type: str,
    recipient: Recipient,
    template_data: Dict[str, Any]
) -> bool:
    """
    Fire-and-forget. Called after the ledger commit, so a notifier failure
    is logged and never propagates.
    """
    try:
        await notifier.notify(event_type, recipient, template_data)
        return True
    except Exception as e:
        logger.warning(
            "Notification failed",
            extra={"event_type": event_type, "email": recipient.email, "error": str(e)}
        )
        return False
