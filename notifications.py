from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from errors import InvalidInput
from models import Notification, NotificationType

logger = logging.getLogger(__name__)


def encode_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    if not isinstance(metadata, Mapping) or not all(
        isinstance(key, str) for key in metadata
    ):
        raise InvalidInput("metadata", "Notification metadata must map strings to values")
    try:
        return json.dumps(dict(metadata), default=str, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("metadata", f"Metadata is not serializable: {exc}") from exc


class NotificationService:
    """Notification sink: the engine enqueues and never reads back."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def enqueue(
        self,
        user_ids: Iterable[int],
        type: NotificationType,
        title: str,
        message: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        recipients = sorted(set(user_ids))
        if not recipients:
            return
        encoded = encode_metadata(metadata)
        for user_id in recipients:
            self.session.add(
                Notification(
                    user_id=user_id,
                    type=NotificationType(type),
                    title=title,
                    message=message,
                    metadata_json=encoded,
                )
            )
        self.session.flush()
        logger.info(
            f"notification_enqueued: type={NotificationType(type).value} "
            f"recipients={recipients}"
        )

    # Read side used by the HTTP layer only.

    def list_for_user(self, user_id: int, unread_only: bool = False) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(self.session.scalars(stmt).all())

    def mark_read(self, user_id: int, notification_id: int) -> bool:
        result = self.session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount > 0

    def mark_all_read(self, user_id: int) -> int:
        result = self.session.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount

    def unread_count(self, user_id: int) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.is_read.is_(False)
        )
        return int(self.session.scalar(stmt) or 0)

    def delete(self, user_id: int, notification_id: int) -> bool:
        result = self.session.execute(
            delete(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount > 0


def decode_metadata(notification: Notification) -> Optional[dict[str, Any]]:
    if not notification.metadata_json:
        return None
    return json.loads(notification.metadata_json)


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    return f"{sign}{abs(cents) / 100:,.2f}"
