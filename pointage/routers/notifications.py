from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.schemas import NotificationMarkReadRequest, NotificationMarkReadResponse, NotificationRead
from pointage.services.notifications import list_notifications, mark_notifications_read

router = APIRouter(tags=["notifications"])


@router.get("/api/notifications", response_model=list[NotificationRead])
def read_notifications(
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[NotificationRead]:
    return list_notifications(db, unread_only=unread_only, limit=limit)


@router.post("/api/notifications/read", response_model=NotificationMarkReadResponse)
def mark_read(
    payload: NotificationMarkReadRequest,
    db: Session = Depends(get_db),
) -> NotificationMarkReadResponse:
    return NotificationMarkReadResponse(updated=mark_notifications_read(db, payload.ids))
