from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.core.errors import ValidationError


@dataclass(frozen=True, slots=True)
class ProgramPlan:
    slug: str
    coaching_weeks: tuple[int, ...]
    check_in_weeks: tuple[int, ...]
    session_minutes: int = 45

    @property
    def total_sessions(self) -> int:
        return len(self.coaching_weeks) + len(self.check_in_weeks)

    @property
    def weeks(self) -> int:
        return max(self.coaching_weeks + self.check_in_weeks)


@dataclass(frozen=True, slots=True)
class PlannedSession:
    sequence_number: int
    session_type: str
    week: int
    starts_at: datetime
    duration_minutes: int


PLANS: dict[str, ProgramPlan] = {
    "starter": ProgramPlan(slug="starter", coaching_weeks=(1, 2), check_in_weeks=(4,)),
    "continuation": ProgramPlan(slug="continuation", coaching_weeks=(1, 2, 5, 6), check_in_weeks=(4, 8)),
    "full": ProgramPlan(slug="full", coaching_weeks=(1, 2, 5, 6, 9, 10), check_in_weeks=(4, 8, 12)),
}


def get_plan(slug: str | None) -> ProgramPlan:
    key = (slug or settings.default_plan_slug).strip().lower()
    plan = PLANS.get(key)
    if plan is None:
        raise ValidationError(f"Unknown plan '{slug}'. Expected one of: {', '.join(sorted(PLANS))}")
    return plan


def parse_clock(value: str | None) -> time:
    raw = (value or settings.default_session_time).strip()
    try:
        hour, minute = (int(x) for x in raw.split(":", 1))
        return time(hour=hour, minute=minute)
    except ValueError as exc:
        raise ValidationError(f"Invalid time '{raw}', expected HH:MM") from exc


def first_session_date(after: datetime, preferred_day: int | None, tz: ZoneInfo) -> date:
    """First day strictly after ``after`` (local date) falling on the preferred weekday."""
    start = after.astimezone(tz).date() + timedelta(days=1)
    if preferred_day is None:
        return start
    return start + timedelta(days=(preferred_day - start.weekday()) % 7)


def layout_sessions(
    plan: ProgramPlan,
    *,
    now: datetime,
    preferred_day: int | None = None,
    preferred_time: str | None = None,
    timezone_name: str | None = None,
) -> list[PlannedSession]:
    tz = ZoneInfo(timezone_name or settings.scheduling_timezone)
    first = first_session_date(now, preferred_day, tz)
    at = parse_clock(preferred_time)

    slots = [(week, "coaching") for week in plan.coaching_weeks] + [(week, "check_in") for week in plan.check_in_weeks]
    slots.sort(key=lambda x: (x[0], x[1] != "coaching"))

    out: list[PlannedSession] = []
    for seq, (week, session_type) in enumerate(slots, start=1):
        day = first + timedelta(weeks=week - 1)
        out.append(
            PlannedSession(
                sequence_number=seq,
                session_type=session_type,
                week=week,
                starts_at=datetime.combine(day, at, tzinfo=tz),
                duration_minutes=plan.session_minutes,
            )
        )
    return out
