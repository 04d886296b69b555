"""Periodic cleanup of attendance notices for long-past rehearsals."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, select

from .config import settings
from .database import get_session
from .models import Notification, Rehearsal
from .notifications import ATTENDANCE_NOTICE_TYPES
from .utils import to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

PURGE_BATCH_SIZE = 200


def purge_stale_notifications(now: datetime | None = None) -> dict:
    """Delete attendance notices whose rehearsal ended before the retention window.

    Absence and emergency notices only inform the planner; once the rehearsal
    is ``notification_retention_days`` in the past they are dropped together
    with their recipient rows. Invitation threads stay as long as the
    rehearsal does.
    """
    stats = {"notifications_deleted": 0, "batches": 0}
    now = to_naive_utc(now or utcnow())
    cutoff = now - settings.retention
    stale_filter = and_(
        Notification.type.in_(sorted(ATTENDANCE_NOTICE_TYPES)),
        Rehearsal.end < cutoff,
    )

    logger.info(
        "Notification cleanup started (retention_days=%d, cutoff=%s)",
        settings.notification_retention_days,
        cutoff.isoformat(),
    )
    with get_session() as session:
        while True:
            batch = session.scalars(
                select(Notification)
                .join(Rehearsal, Notification.rehearsal_id == Rehearsal.id)
                .where(stale_filter)
                .order_by(Notification.created_at, Notification.id)
                .limit(PURGE_BATCH_SIZE)
            ).all()
            if not batch:
                break
            for notification in batch:
                logger.debug(
                    "Deleting notification %s (%s) created %s",
                    notification.id,
                    notification.title,
                    notification.created_at.isoformat(),
                )
                session.delete(notification)
                stats["notifications_deleted"] += 1
            stats["batches"] += 1
            session.commit()

    logger.info(
        "Notification cleanup finished: deleted=%d across %d batches",
        stats["notifications_deleted"],
        stats["batches"],
    )
    return stats
