"""
Notification store operations (DB-backed).

Key methods:
- create_for_recipient / create_for_recipients / broadcast_to_role (admin sends, business events)
- list_for_recipient / unread_count
- mark_read / mark_all_read
- delete_for_recipient / delete_all_read / admin_delete

Every committed write is published on the change feed so live streams see it,
and sends call hub.ensure_channel for each affected recipient.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.realtime import Realtime
from infra.change_feed import DELETE, INSERT, UPDATE
from models.db_models import NOTIFICATION_TYPES, Notification, User, utcnow
from services.notification_hub import NOTIFICATIONS_TABLE

logger = logging.getLogger(__name__)

HIGH_PRIORITY_TYPES = ("maintenance", "delay")


class UnknownRecipientError(LookupError):
    """Raised when a notification is addressed to a user that does not exist."""


def derive_priority(notification_type: str) -> str:
    """Priority at creation time: high for maintenance/delay, normal otherwise."""
    return "high" if notification_type in HIGH_PRIORITY_TYPES else "normal"


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "recipient_id": n.recipient_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "is_read": bool(n.is_read),
        "priority": n.priority,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


class NotificationDBService:
    """DB-backed notification service using async SQLAlchemy."""

    def __init__(self, session: AsyncSession, realtime: Optional[Realtime] = None):
        self.session = session
        self.realtime = realtime

    # ---------------- create ----------------

    async def create_for_recipient(self, recipient_id: str, type: str, message: str,
                                   title: Optional[str] = None) -> dict:
        rows = await self.create_for_recipients([recipient_id], type, message, title=title)
        if not rows:
            raise ValueError("recipient_id is required")
        return rows[0]

    async def create_for_recipients(self, recipient_ids: Iterable[str], type: str, message: str,
                                    title: Optional[str] = None) -> list[dict]:
        """
        Insert one notification per distinct recipient.

        Raises ValueError for an unknown type or empty message and
        UnknownRecipientError when any recipient does not exist.
        """
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {type}")
        if not message or not message.strip():
            raise ValueError("message is required")

        recipients = list(dict.fromkeys(r for r in recipient_ids if r))
        if not recipients:
            return []
        result = await self.session.execute(select(User.id).where(User.id.in_(recipients)))
        missing = set(recipients) - {row[0] for row in result.all()}
        if missing:
            raise UnknownRecipientError(", ".join(sorted(missing)))
        priority = derive_priority(type)
        records = [
            Notification(recipient_id=r, type=type, title=title, message=message,
                         is_read=False, priority=priority, created_at=utcnow())
            for r in recipients
        ]
        self.session.add_all(records)
        await self.session.commit()
        rows = [notification_to_dict(n) for n in records]
        logger.info("Created %d %s notification(s)", len(rows), type)
        await self._after_insert(rows)
        return rows

    async def broadcast_to_role(self, role: str, type: str, message: str,
                                title: Optional[str] = None) -> list[dict]:
        """Send to every active user with the given role."""
        result = await self.session.execute(
            select(User.id).where(User.role == role, User.status == "active")
        )
        recipient_ids = [row[0] for row in result.all()]
        if not recipient_ids:
            logger.info("Broadcast to role=%s skipped: no active users", role)
            return []
        return await self.create_for_recipients(recipient_ids, type, message, title=title)

    async def _after_insert(self, rows: list[dict]) -> None:
        if self.realtime is None:
            return
        for row in rows:
            # the channel must exist before the insert event goes out
            self.realtime.hub.ensure_channel(row["recipient_id"])
            await self.realtime.feed.publish(NOTIFICATIONS_TABLE, INSERT, row)

    async def _publish(self, event_type: str, new_row: Optional[dict], old_row: Optional[dict] = None) -> None:
        if self.realtime is not None:
            await self.realtime.feed.publish(NOTIFICATIONS_TABLE, event_type, new_row, old_row)

    # ---------------- read ----------------

    async def get(self, notification_id: str) -> Optional[Notification]:
        return await self.session.get(Notification, notification_id)

    async def list_for_recipient(self, recipient_id: str, unread_only: bool = False, limit: int = 50) -> list[dict]:
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [notification_to_dict(n) for n in result.scalars().all()]

    async def list_all(self, limit: int = 100, type: Optional[str] = None) -> list[dict]:
        stmt = select(Notification)
        if type:
            stmt = stmt.where(Notification.type == type)
        result = await self.session.execute(stmt.order_by(Notification.created_at.desc()).limit(limit))
        return [notification_to_dict(n) for n in result.scalars().all()]

    async def unread_count(self, recipient_id: str) -> int:
        result = await self.session.execute(
            select(func.count(Notification.id)).where(
                Notification.recipient_id == recipient_id, Notification.is_read.is_(False)
            )
        )
        return int(result.scalar_one())

    # ---------------- mark read ----------------

    async def mark_read(self, recipient_id: str, notification_id: str) -> Optional[dict]:
        """
        Mark one of the recipient's notifications read.

        read_at is set only on the false -> true transition; a repeated call
        returns the row unchanged. None when not found or not owned.
        """
        record = await self.get(notification_id)
        if record is None or record.recipient_id != recipient_id:
            return None
        if record.is_read:
            return notification_to_dict(record)
        old_row = notification_to_dict(record)
        record.is_read = True
        record.read_at = utcnow()
        await self.session.commit()
        new_row = notification_to_dict(record)
        await self._publish(UPDATE, new_row, old_row)
        return new_row

    async def mark_all_read(self, recipient_id: str) -> int:
        result = await self.session.execute(
            select(Notification).where(
                Notification.recipient_id == recipient_id, Notification.is_read.is_(False)
            )
        )
        records = list(result.scalars().all())
        if not records:
            return 0
        now = utcnow()
        old_rows = [notification_to_dict(n) for n in records]
        await self.session.execute(
            update(Notification)
            .where(Notification.id.in_([n.id for n in records]), Notification.is_read.is_(False))
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        for old_row in old_rows:
            await self._publish(UPDATE, {**old_row, "is_read": True, "read_at": now.isoformat()}, old_row)
        return len(records)

    # ---------------- delete ----------------

    async def delete_for_recipient(self, recipient_id: str, notification_id: str) -> bool:
        record = await self.get(notification_id)
        if record is None or record.recipient_id != recipient_id:
            return False
        return await self._delete_record(record)

    async def admin_delete(self, notification_id: str) -> bool:
        record = await self.get(notification_id)
        if record is None:
            return False
        return await self._delete_record(record)

    async def _delete_record(self, record: Notification) -> bool:
        old_row = notification_to_dict(record)
        await self.session.delete(record)
        await self.session.commit()
        await self._publish(DELETE, None, old_row)
        return True

    async def delete_all_read(self, recipient_id: str) -> int:
        result = await self.session.execute(
            select(Notification).where(
                Notification.recipient_id == recipient_id, Notification.is_read.is_(True)
            )
        )
        old_rows = [notification_to_dict(n) for n in result.scalars().all()]
        if not old_rows:
            return 0
        await self.session.execute(
            delete(Notification)
            .where(Notification.id.in_([r["id"] for r in old_rows]))
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        for old_row in old_rows:
            await self._publish(DELETE, None, old_row)
        return len(old_rows)
