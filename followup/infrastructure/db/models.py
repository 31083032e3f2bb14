"""
SQLAlchemy ORM models (decision pipeline tables + read models)
"""
from datetime import date as date_type, datetime, time as time_type
from sqlalchemy import (
    String, Integer, Text, TIMESTAMP, Date, Time, func, Boolean, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from followup.infrastructure.db.session import Base


class User(Base):
    """
    Account owner. Authentication lives elsewhere; only the fields the
    decision pipeline reads are kept here.
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Entitlement: NULL / "active" / "trial" allow prompts, anything else blocks them
    plan_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    prompt_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class Contact(Base):
    """Person a user follows up with."""
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class Reminder(Base):
    """
    Scheduled follow-up reminder.

    status: pending → sent | failed | snoozed (exactly once, conditional UPDATE)
    claimed_at: delivery lease taken by the worker currently processing the row
    """
    __tablename__ = "reminders"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # follow_up | affirmation | generic
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="generic")

    scheduled_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Set on the replacement row created by an explicit snooze
    snoozed_from_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_reminders_status_scheduled", "status", "scheduled_at"),
    )


class EventLog(Base):
    """
    Event log - append-only source of truth for stats, streaks and audit.

    Rows are never updated or deleted. payload_json is validated against the
    schema registered for event_type before insert.
    """
    __tablename__ = "event_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)  # PostgreSQL JSONB

    reminder_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # app | scheduler | system | external
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="app")

    occurred_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_event_log_user_type_occurred", "user_id", "event_type", "occurred_at"),
    )


class SchedulingPreferencesModel(Base):
    """Per-user delivery windows, caps and snooze option set (one row per user)."""
    __tablename__ = "scheduling_preferences"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    working_hours_start: Mapped[time_type] = mapped_column(Time, nullable=False, default=time_type(9, 0))
    working_hours_end: Mapped[time_type] = mapped_column(Time, nullable=False, default=time_type(17, 30))
    # Python weekday numbers, 0 = Monday
    working_days: Mapped[list] = mapped_column(JSONB, nullable=False, default=lambda: [0, 1, 2, 3, 4])
    quiet_hours_start: Mapped[time_type | None] = mapped_column(Time, nullable=True)
    quiet_hours_end: Mapped[time_type | None] = mapped_column(Time, nullable=True)

    max_reminders_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    allow_weekends: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    snooze_options: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    # fast | balanced | light_touch
    follow_up_cadence: Mapped[str] = mapped_column(String(20), nullable=False, default="balanced")
    smart_suggestions_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    category_notifications: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    notification_channels: Mapped[list] = mapped_column(JSONB, nullable=False, default=lambda: ["email"])

    dnd_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # {"emergency_contacts": [contact_id, ...], "override_keywords": [str, ...]}
    dnd_override_rules: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class DigestPreferencesModel(Base):
    """Weekly digest schedule and content profile."""
    __tablename__ = "digest_preferences"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    weekly_digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    digest_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = Monday
    digest_time: Mapped[time_type] = mapped_column(Time, nullable=False, default=time_type(8, 0))
    # email | in_app | both
    digest_channel: Mapped[str] = mapped_column(String(10), nullable=False, default="email")
    # light | standard
    digest_detail_level: Mapped[str] = mapped_column(String(10), nullable=False, default="standard")
    only_when_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class TriggerRuleModel(Base):
    """Per-user prompt rule; default set provisioned lazily on first use."""
    __tablename__ = "trigger_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    conditions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    template_key: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    cooldown_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_per_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ttl_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=86400)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("user_id", "rule_name", name="uq_trigger_rules_user_rule"),
        Index("ix_trigger_rules_user_event", "user_id", "trigger_event_type"),
    )


class NotificationPromptModel(Base):
    """
    In-app prompt queued by the trigger rule engine.

    status: queued → displayed | dismissed | expired; displayed → acted | dismissed | expired
    source_event_id is UNIQUE: one prompt per source event.
    """
    __tablename__ = "notification_prompts"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    reminder_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    source_event_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    queued_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    displayed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notification_prompts_user_status", "user_id", "status"),
    )


class DigestJobRecord(Base):
    """
    Terminal outcome of one user's weekly digest.

    dedupe_key = "{user_id}_{week_start}" is UNIQUE; a failed record may be
    promoted to sent by a later tick, never the other way round.
    """
    __tablename__ = "digest_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    week_start: Mapped[date_type] = mapped_column(Date, nullable=False)
    week_end: Mapped[date_type] = mapped_column(Date, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    variant: Mapped[str | None] = mapped_column(String(20), nullable=True)
    stats_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # sent | failed
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class UserStreak(Base):
    """Read model: last computed completion streak per user."""
    __tablename__ = "user_streaks"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    best_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class InAppNotification(Base):
    """Inbox item written by the in-app channel (reminders, digests)."""
    __tablename__ = "in_app_notifications"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    reminder_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # reminder | digest
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class PushSubscription(Base):
    """Web Push subscription for a user device."""
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
