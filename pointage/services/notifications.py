from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from pointage.models import Notification
from pointage.services.upsert import dialect_insert

logger = logging.getLogger("pointage.notifications")

KIND_PUNCH = "PUNCH_LOG"
KIND_LEDGER = "LEDGER"


def punch_idempotency_key(employee_id: int, ts_utc: datetime) -> str:
    return f"{KIND_PUNCH}:{employee_id}_{int(ts_utc.timestamp())}"


class NotificationSink:
    """Writes notification rows on a private session. Never raises to the caller."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def notify(
        self,
        kind: str,
        title: str,
        message: str,
        *,
        employee_id: int | None = None,
        actor_name: str | None = None,
        deep_link: str | None = None,
        idempotency_key: str | None = None,
        created_at: datetime | None = None,
    ) -> bool:
        values = {
            "kind": kind,
            "title": title,
            "message": message,
            "employee_id": employee_id,
            "actor_name": actor_name,
            "deep_link": deep_link,
            "idempotency_key": idempotency_key,
            "is_read": False,
            "created_at": created_at or datetime.now(timezone.utc),
        }
        try:
            with self._session_factory() as db:
                stmt = dialect_insert(db, Notification).values(**values)
                if idempotency_key is not None:
                    stmt = stmt.on_conflict_do_nothing(index_elements=[Notification.idempotency_key])
                result = db.execute(stmt)
                db.commit()
        except Exception:
            logger.exception(
                "notification_write_failed",
                extra={"kind": kind, "employee_id": employee_id, "idempotency_key": idempotency_key},
            )
            return False
        return bool(result.rowcount)

    def purge_older_than(self, now_utc: datetime, *, retention_days: int) -> int:
        cutoff = now_utc - timedelta(days=max(1, retention_days))
        with self._session_factory() as db:
            result = db.execute(delete(Notification).where(Notification.created_at < cutoff))
            db.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("notifications_purged", extra={"purged": purged, "cutoff": cutoff.isoformat()})
        return purged


def list_notifications(db: Session, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    stmt = select(Notification).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    return list(db.scalars(stmt).all())


def mark_notifications_read(db: Session, ids: list[int] | None = None) -> int:
    stmt = update(Notification).where(Notification.is_read.is_(False)).values(is_read=True)
    if ids:
        stmt = stmt.where(Notification.id.in_(ids))
    result = db.execute(stmt)
    db.commit()
    return result.rowcount or 0
