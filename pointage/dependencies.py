from __future__ import annotations

from functools import lru_cache

from pointage.clock import SystemClock
from pointage.db import SessionLocal
from pointage.services.cache import ReadCache
from pointage.services.classifier import ClassifierRules
from pointage.services.notifications import NotificationSink
from pointage.services.provisioner import MonthLedgerProvisioner
from pointage.services.punches import DailyTablePunchSource, PunchSource, SqlPunchSource
from pointage.services.reconciler import Reconciler
from pointage.settings import get_settings


def build_punch_source(kind: str) -> PunchSource:
    if kind == "daily_tables":
        return DailyTablePunchSource()
    return SqlPunchSource()


@lru_cache
def get_reconciler() -> Reconciler:
    settings = get_settings()
    clock = SystemClock()
    return Reconciler(
        session_factory=SessionLocal,
        cache=ReadCache(
            clock,
            open_day_ttl_seconds=settings.cache_ttl_open_day_seconds,
            closed_day_ttl_seconds=settings.cache_ttl_closed_day_seconds,
        ),
        clock=clock,
        provisioner=MonthLedgerProvisioner(SessionLocal),
        punch_source=build_punch_source(settings.punch_source),
        notifier=NotificationSink(SessionLocal),
        rules=ClassifierRules.from_settings(settings),
        max_workers=settings.reconcile_max_workers,
        sync_throttle_seconds=settings.sync_throttle_seconds,
        dedup_minutes=settings.punch_dedup_minutes,
    )
