from __future__ import annotations

import datetime
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.types import Time

from settings import DATA_DIR, DATABASE_URL


logger = logging.getLogger(__name__)

OVERRIDE_REASONS = ("time_change", "pto", "sick", "swap", "training", "day_off", "other")
TIME_OFF_REASONS = {"pto", "sick", "day_off"}


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_aware(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Sunday that opens the week containing the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    offset = (date_value.weekday() + 1) % 7
    return date_value - datetime.timedelta(days=offset)


def week_dates(week_start: datetime.date) -> List[datetime.date]:
    start = normalize_week_start(week_start)
    return [start + datetime.timedelta(days=index) for index in range(7)]


def day_index(date_value: datetime.date) -> int:
    """0 = Sunday .. 6 = Saturday."""
    return (date_value.weekday() + 1) % 7


def format_week_label(week_start: datetime.date) -> str:
    start = normalize_week_start(week_start)
    end = start + datetime.timedelta(days=6)
    start_str = start.strftime("%b %d")
    end_str = end.strftime("%b %d")
    if start.year != end.year:
        start_str = start.strftime("%b %d %Y")
        end_str = end.strftime("%b %d %Y")
    return f"Week of {start_str} - {end_str}"


class Base(DeclarativeBase):
    """Metadata for the staff directory, templates and shift records."""

    pass


class StaffMember(Base):
    __tablename__ = "staff"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    default_role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="active")


class DefaultSchedule(Base):
    __tablename__ = "default_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staff_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    effective_from: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    days: Mapped[List["DefaultScheduleDay"]] = relationship(
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="DefaultScheduleDay.day_of_week",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("staff_id", "effective_from", name="uq_default_schedule_staff_effective"),
    )

    def day(self, index: int) -> Optional["DefaultScheduleDay"]:
        for entry in self.days:
            if entry.day_of_week == index:
                return entry
        return None


class DefaultScheduleDay(Base):
    __tablename__ = "default_schedule_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("default_schedules.id", ondelete="CASCADE"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Sunday
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    overnight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    schedule: Mapped[DefaultSchedule] = relationship(back_populates="days")

    __table_args__ = (
        UniqueConstraint("schedule_id", "day_of_week", name="uq_default_schedule_day"),
    )


class ShiftRecord(Base):
    __tablename__ = "shift_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staff_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    role: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="manual")
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    override_reason: Mapped[str | None] = mapped_column(String(24), nullable=True)
    original_start: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    original_end: Mapped[datetime.time | None] = mapped_column(Time, nullable=True)
    overnight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("staff_id", "date", name="uq_shift_record_staff_date"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_time_off(self) -> bool:
        return self.start_time is None or self.end_time is None


class WeekPublication(Base):
    __tablename__ = "week_publications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    published_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    published_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    modified_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ShiftRecord")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def payload(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.payloadJSON or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    if DATABASE_URL.startswith("sqlite:///"):
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(engine)
    logger.info("Database ready at %s", DATABASE_URL)


def record_audit_log(
    session,
    actor: str,
    action: str,
    target_type: str = "ShiftRecord",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit entry; the caller's commit persists it with the change it describes."""
    log = AuditLog(
        actor=actor or "system",
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    return log


def list_audit_log(session, *, action: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    return list(session.scalars(stmt))


def get_week_publication(session, week_start: datetime.date) -> Optional[WeekPublication]:
    normalized = normalize_week_start(week_start)
    stmt = select(WeekPublication).where(WeekPublication.week_start == normalized)
    return session.scalars(stmt).first()


def mark_week_modified(session, date_value: datetime.date) -> None:
    """Flag the published week containing ``date_value`` as edited since publish."""
    normalized = normalize_week_start(date_value)
    session.execute(
        update(WeekPublication)
        .where(WeekPublication.week_start == normalized)
        .values(modified_at=utcnow())
    )


def mark_weeks_modified_from(session, date_value: datetime.date) -> None:
    """Flag every published week that overlaps ``date_value`` or comes after it."""
    first_week = normalize_week_start(date_value)
    session.execute(
        update(WeekPublication)
        .where(WeekPublication.week_start >= first_week)
        .values(modified_at=utcnow())
    )
