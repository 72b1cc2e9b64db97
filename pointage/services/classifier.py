"""Pure shift and lateness classification for one employee's logical day.

Nothing in here touches the database or reads the wall clock: callers pass the
deduplicated punches, the planned shift and ``now_utc`` explicitly.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from pointage.models import EmployeeSchedule, ShiftLabel
from pointage.services.logical_day import local_at, logical_day_bounds, normalize_ts, parse_hhmm, to_local
from pointage.settings import Settings, get_settings

REASON_ABSENT = "Absence injustifiée"
REASON_ABSENT_CHEF = "Absence injustifiée (Chef)"
REASON_ABSENT_COUPURE = "Absence injustifiée (Coupure)"
REASON_MISSING_EXIT = "Pointage de sortie manquant"
REASON_MISSING_EXIT_FIXED = "Pointage de sortie manquant (Fixe)"

MODE_STANDARD = "standard"
MODE_COUPURE = "coupure"
MODE_FIXE = "fixe"

_DURATION_PATTERN = re.compile(
    r"^(?:(?P<hours>\d+)\s*h(?:eures?|ours?)?)?\s*(?:(?P<minutes>\d+)\s*(?:m|mn|min|mins|minutes?)?)?$"
)


@dataclass(frozen=True, slots=True)
class Duration:
    minutes: int

    def __post_init__(self) -> None:
        if self.minutes < 0:
            raise ValueError("Duration cannot be negative.")

    @classmethod
    def parse(cls, text: str | int | None) -> Duration:
        """Accepts ``45``, ``"25 min"``, ``"1h 5m"``, ``"1h05"`` or ``"2h"``."""
        if text is None:
            return cls(0)
        if isinstance(text, int):
            return cls(text)
        raw = str(text).strip().lower()
        if not raw:
            return cls(0)
        match = _DURATION_PATTERN.match(raw)
        if match is None or (match.group("hours") is None and match.group("minutes") is None):
            raise ValueError(f"Unrecognised duration: {text!r}")
        hours = int(match.group("hours") or 0)
        minutes = int(match.group("minutes") or 0)
        return cls(hours * 60 + minutes)

    def humanize(self) -> str:
        hours, minutes = divmod(self.minutes, 60)
        if hours == 0:
            return f"{minutes} min"
        if minutes == 0:
            return f"{hours}h"
        return f"{hours}h {minutes}m"


@dataclass(frozen=True, slots=True)
class WorkPattern:
    """How an employee's day is timed: standard shifts, a split day or fixed hours.

    For ``coupure`` the first pair is the morning segment and the second pair the
    afternoon one; ``fixe`` only uses ``start``/``end``.
    """

    mode: str = MODE_STANDARD
    start: time | None = None
    end: time | None = None
    second_start: time | None = None
    second_end: time | None = None

    @property
    def is_split(self) -> bool:
        return self.mode == MODE_COUPURE

    @property
    def is_fixed(self) -> bool:
        return self.mode == MODE_FIXE


STANDARD_PATTERN = WorkPattern()


@dataclass(frozen=True, slots=True)
class ClassifierRules:
    logical_day_start_hour: int = 4
    matin_start: time = time(7, 0)
    matin_end: time = time(16, 0)
    soir_start: time = time(16, 0)
    soir_end: time = time(23, 0)
    soir_threshold_hour: int = 15
    doublage_min_hours: int = 14
    ongoing_doublage_hours: int = 10
    ongoing_doublage_after_hour: int = 18
    ongoing_doublage_before_hour: int = 7
    absence_grace_minutes: int = 30
    chef_department: str = "Chef_Cuisine"
    chef_first_start: time = time(11, 0)
    chef_second_start: time = time(19, 0)
    chef_end: time = time(22, 0)
    chef_first_window_end_hour: int = 15
    chef_second_window_start_hour: int = 16
    chef_absence_cutoff: time = time(23, 0)
    coupure_first_in: time = time(8, 0)
    coupure_first_out: time = time(12, 0)
    coupure_second_in: time = time(14, 0)
    coupure_second_out: time = time(18, 0)
    coupure_cutoff_hour: int = 13
    coupure_absence_cutoff: time = time(12, 0)
    fixed_start: time = time(8, 0)
    fixed_end: time = time(17, 0)
    retard_infraction_threshold_minutes: int = 10
    retard_infraction_amount: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ClassifierRules:
        settings = settings or get_settings()
        return cls(
            logical_day_start_hour=settings.logical_day_start_hour,
            matin_start=parse_hhmm(settings.matin_start),
            matin_end=parse_hhmm(settings.matin_end),
            soir_start=parse_hhmm(settings.soir_start),
            soir_end=parse_hhmm(settings.soir_end),
            soir_threshold_hour=settings.soir_threshold_hour,
            doublage_min_hours=settings.doublage_min_hours,
            ongoing_doublage_hours=settings.ongoing_doublage_hours,
            ongoing_doublage_after_hour=settings.ongoing_doublage_after_hour,
            ongoing_doublage_before_hour=settings.ongoing_doublage_before_hour,
            absence_grace_minutes=settings.absence_grace_minutes,
            chef_department=settings.chef_department,
            chef_first_start=parse_hhmm(settings.chef_first_start),
            chef_second_start=parse_hhmm(settings.chef_second_start),
            chef_end=parse_hhmm(settings.chef_end),
            chef_first_window_end_hour=settings.chef_first_window_end_hour,
            chef_second_window_start_hour=settings.chef_second_window_start_hour,
            chef_absence_cutoff=parse_hhmm(settings.chef_absence_cutoff),
            coupure_first_in=parse_hhmm(settings.coupure_first_in),
            coupure_first_out=parse_hhmm(settings.coupure_first_out),
            coupure_second_in=parse_hhmm(settings.coupure_second_in),
            coupure_second_out=parse_hhmm(settings.coupure_second_out),
            coupure_cutoff_hour=settings.coupure_cutoff_hour,
            coupure_absence_cutoff=parse_hhmm(settings.coupure_absence_cutoff),
            fixed_start=parse_hhmm(settings.fixed_start),
            fixed_end=parse_hhmm(settings.fixed_end),
            retard_infraction_threshold_minutes=settings.retard_infraction_threshold_minutes,
            retard_infraction_amount=settings.retard_infraction_amount,
        )

    def is_chef(self, department: str | None) -> bool:
        return (department or "").strip() == self.chef_department

    def pattern_for(self, schedule: EmployeeSchedule | None) -> WorkPattern:
        """Build the employee's work pattern, falling back to the default timetable per field."""
        if schedule is None:
            return STANDARD_PATTERN
        if schedule.is_coupure:
            return WorkPattern(
                mode=MODE_COUPURE,
                start=schedule.p1_in or self.coupure_first_in,
                end=schedule.p1_out or self.coupure_first_out,
                second_start=schedule.p2_in or self.coupure_second_in,
                second_end=schedule.p2_out or self.coupure_second_out,
            )
        if schedule.is_fixed:
            return WorkPattern(
                mode=MODE_FIXE,
                start=schedule.fixed_in or self.fixed_start,
                end=schedule.fixed_out or self.fixed_end,
            )
        return STANDARD_PATTERN

    def shift_start(
        self,
        shift: ShiftLabel | None,
        department: str | None = None,
        pattern: WorkPattern = STANDARD_PATTERN,
    ) -> time:
        if self.is_chef(department):
            return self.chef_first_start
        if pattern.mode != MODE_STANDARD:
            return pattern.start
        if shift == ShiftLabel.SOIR:
            return self.soir_start
        return self.matin_start

    def nominal_bounds(
        self,
        shift: ShiftLabel | None,
        department: str | None = None,
        pattern: WorkPattern = STANDARD_PATTERN,
    ) -> tuple[time, time]:
        """Nominal (start, end) of a shift, used when a day is pardoned."""
        if self.is_chef(department):
            return self.chef_first_start, self.chef_end
        if pattern.is_split:
            return pattern.start, pattern.second_end
        if pattern.is_fixed:
            return pattern.start, pattern.end
        if shift == ShiftLabel.SOIR:
            return self.soir_start, self.soir_end
        return self.matin_start, self.matin_end


@dataclass(frozen=True, slots=True)
class DayClassification:
    shift_label: ShiftLabel | None
    clock_in: time | None
    clock_out: time | None
    is_absent: bool
    is_retard: bool
    retard_minutes: int
    reason: str | None
    auto_infraction: float
    punch_count: int
    is_ongoing: bool
    # Split days count each attended segment as half a day.
    presence_score: float = 1.0

    @property
    def has_punches(self) -> bool:
        return self.punch_count > 0

    @property
    def present(self) -> float:
        if not self.has_punches or self.is_absent:
            return 0.0
        return self.presence_score

    @property
    def retard(self) -> Duration:
        return Duration(self.retard_minutes)


def _minutes_late(actual_utc: datetime, day: date, reference: time) -> int:
    delta = actual_utc - local_at(day, reference)
    if delta <= timedelta(0):
        return 0
    return int(delta.total_seconds() // 60)


def _hhmm(ts_utc: datetime) -> time:
    return to_local(ts_utc).time().replace(second=0, microsecond=0)


def observed_shift(
    punches: Sequence[datetime],
    *,
    is_ongoing: bool,
    now_utc: datetime,
    rules: ClassifierRules,
) -> ShiftLabel:
    first = punches[0]
    if to_local(first).hour >= rules.soir_threshold_hour:
        return ShiftLabel.SOIR

    if is_ongoing:
        elapsed = now_utc - first
        now_hour = to_local(now_utc).hour
        if (
            elapsed > timedelta(hours=rules.ongoing_doublage_hours)
            or now_hour >= rules.ongoing_doublage_after_hour
            or now_hour < rules.ongoing_doublage_before_hour
        ):
            return ShiftLabel.DOUBLAGE
        return ShiftLabel.MATIN

    duration = punches[-1] - first
    if duration > timedelta(hours=rules.doublage_min_hours):
        return ShiftLabel.DOUBLAGE
    return ShiftLabel.MATIN


def _chef_lateness(punches: Sequence[datetime], day: date, rules: ClassifierRules) -> int:
    """Sum of the lateness of the lunch and dinner services, each against its own start."""
    same_day = [ts for ts in punches if to_local(ts).date() == day]
    first_window = next(
        (ts for ts in same_day if rules.logical_day_start_hour <= to_local(ts).hour < rules.chef_first_window_end_hour),
        None,
    )

    second_window = None
    for index, ts in enumerate(same_day):
        local_ts = to_local(ts)
        if local_ts.hour < rules.chef_second_window_start_hour or local_ts.time() >= rules.chef_end:
            continue
        previous = same_day[index - 1] if index > 0 else None
        # The exit closing the lunch service is not the dinner entry.
        closes_lunch = (
            index % 2 == 1
            and previous is not None
            and to_local(previous).hour < rules.chef_first_window_end_hour
            and local_ts.time() < rules.chef_second_start
        )
        if not closes_lunch:
            second_window = ts
            break

    total = 0
    if first_window is not None:
        total += _minutes_late(first_window, day, rules.chef_first_start)
    if second_window is not None:
        total += _minutes_late(second_window, day, rules.chef_second_start)
    return total


def _split_segments(
    punches: Sequence[datetime],
    day: date,
    cutoff_hour: int,
) -> tuple[list[datetime], list[datetime]]:
    morning = [ts for ts in punches if to_local(ts).date() == day and to_local(ts).hour < cutoff_hour]
    afternoon = [ts for ts in punches if not (to_local(ts).date() == day and to_local(ts).hour < cutoff_hour)]
    return morning, afternoon


def _no_punch_verdict(
    scheduled: ShiftLabel,
    *,
    day: date,
    is_chef: bool,
    pattern: WorkPattern,
    rules: ClassifierRules,
) -> tuple[datetime, str]:
    if is_chef:
        return local_at(day, rules.chef_absence_cutoff), REASON_ABSENT_CHEF
    if pattern.is_split:
        return local_at(day, rules.coupure_absence_cutoff), REASON_ABSENT_COUPURE
    grace = timedelta(minutes=rules.absence_grace_minutes)
    if pattern.is_fixed:
        return local_at(day, pattern.start) + grace, f"{REASON_ABSENT} (Fixe @ {pattern.start.strftime('%H:%M')})"
    return local_at(day, rules.shift_start(scheduled)) + grace, REASON_ABSENT


def classify_day(
    *,
    punches: Sequence[datetime],
    scheduled_shift: ShiftLabel | None,
    department: str | None,
    day: date,
    now_utc: datetime,
    rules: ClassifierRules,
    has_manual_infraction: bool = False,
    pattern: WorkPattern = STANDARD_PATTERN,
) -> DayClassification:
    ordered = sorted(normalize_ts(item) for item in punches)
    now_utc = normalize_ts(now_utc)
    scheduled = scheduled_shift or ShiftLabel.REPOS
    _, day_end_utc = logical_day_bounds(day, start_hour=rules.logical_day_start_hour)
    day_is_past = now_utc >= day_end_utc
    is_chef = rules.is_chef(department)

    if not ordered:
        if scheduled == ShiftLabel.REPOS:
            return DayClassification(
                shift_label=None,
                clock_in=None,
                clock_out=None,
                is_absent=False,
                is_retard=False,
                retard_minutes=0,
                reason=None,
                auto_infraction=0.0,
                punch_count=0,
                is_ongoing=False,
            )
        deadline, reason = _no_punch_verdict(scheduled, day=day, is_chef=is_chef, pattern=pattern, rules=rules)
        is_absent = day_is_past or now_utc >= deadline
        return DayClassification(
            shift_label=scheduled,
            clock_in=None,
            clock_out=None,
            is_absent=is_absent,
            is_retard=False,
            retard_minutes=0,
            reason=reason if is_absent else None,
            auto_infraction=0.0,
            punch_count=0,
            is_ongoing=False,
        )

    count = len(ordered)
    odd_count = count % 2 == 1
    is_ongoing = odd_count and not day_is_past
    first = ordered[0]
    clock_out = _hhmm(ordered[-1]) if count > 1 else None

    # Only after-midnight punches: the exit of a late shift whose entry was never recorded.
    if to_local(first).date() != day:
        return DayClassification(
            shift_label=ShiftLabel.SOIR,
            clock_in=None,
            clock_out=_hhmm(ordered[-1]),
            is_absent=False,
            is_retard=False,
            retard_minutes=0,
            reason=None,
            auto_infraction=0.0,
            punch_count=count,
            is_ongoing=False,
        )

    # Punch timing decides the shift; the planned label only matters on days without punches.
    shift = observed_shift(ordered, is_ongoing=is_ongoing, now_utc=now_utc, rules=rules)

    if not is_chef and not pattern.is_split and odd_count and day_is_past:
        return DayClassification(
            shift_label=shift,
            clock_in=_hhmm(first),
            clock_out=clock_out,
            is_absent=True,
            is_retard=False,
            retard_minutes=0,
            reason=REASON_MISSING_EXIT_FIXED if pattern.is_fixed else REASON_MISSING_EXIT,
            auto_infraction=0.0,
            punch_count=count,
            is_ongoing=False,
        )

    presence_score = 1.0
    missing_segments: list[str] = []
    if pattern.is_split:
        cutoff = rules.chef_second_window_start_hour if is_chef else rules.coupure_cutoff_hour
        morning, afternoon = _split_segments(ordered, day, cutoff)
        presence_score = 0.5 * bool(morning) + 0.5 * bool(afternoon)
        if day_is_past:
            missing_segments = [label for label, segment in (("P1", morning), ("P2", afternoon)) if not segment]

    if is_chef:
        retard_minutes = _chef_lateness(ordered, day, rules)
    elif pattern.is_split:
        retard_minutes = 0
        if morning:
            retard_minutes += _minutes_late(morning[0], day, pattern.start)
        if afternoon:
            retard_minutes += _minutes_late(afternoon[0], day, pattern.second_start)
    else:
        retard_minutes = _minutes_late(first, day, rules.shift_start(shift, pattern=pattern))

    auto_infraction = 0.0
    if retard_minutes > rules.retard_infraction_threshold_minutes and not has_manual_infraction:
        auto_infraction = rules.retard_infraction_amount

    reasons = [Duration(retard_minutes).humanize()] if retard_minutes > 0 else []
    reasons.extend(f"{label} Absent" for label in missing_segments)

    return DayClassification(
        shift_label=shift,
        clock_in=_hhmm(first),
        clock_out=clock_out,
        is_absent=False,
        is_retard=retard_minutes > 0,
        retard_minutes=retard_minutes,
        reason=" + ".join(reasons) or None,
        auto_infraction=auto_infraction,
        punch_count=count,
        is_ongoing=is_ongoing,
        presence_score=presence_score,
    )
