from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import unquote

from fastapi import Request
from sqlalchemy.orm import Session

from pointage.models import AuditLog

logger = logging.getLogger("pointage.audit")

DEFAULT_ACTOR = "Système"


def request_actor(request: Request) -> str:
    # Header values are ASCII, so accented names arrive percent-encoded.
    return unquote(request.headers.get("X-Actor") or "").strip() or DEFAULT_ACTOR


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor": actor,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor": actor,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )
