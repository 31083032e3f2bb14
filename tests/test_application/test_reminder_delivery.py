"""
Tests for the reminder delivery pipeline.

Covers:
- allowed reminder delivered once, logged due → allowed → triggered
- weekend reminder suppressed and re-attempted on Monday
- daily cap reached after ten deliveries
- category-disabled reminder dropped (pending → failed)
- do-not-disturb deferral, emergency contact and keyword overrides
- channel failures, partial delivery
- exactly-once status transition under concurrent workers
- batch isolation: one broken reminder does not stop the others
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from followup.application.preferences import PreferencesService
from followup.application.prompt_engine import PromptEngine
from followup.application.reminder_delivery import (
    ReminderDeliveryService,
    transition_reminder_status,
)
from followup.domain.working_hours import as_utc
from followup.infrastructure.db.models import EventLog, NotificationPromptModel, Reminder, User
from followup.infrastructure.eventlog.repository import EventLogRepository

_tz = timezone.utc
MONDAY_10 = datetime(2026, 1, 12, 10, 0, tzinfo=_tz)
SATURDAY_10 = datetime(2026, 1, 10, 10, 0, tzinfo=_tz)


def _event_types(db, reminder_id):
    rows = db.query(EventLog).filter(EventLog.reminder_id == reminder_id).order_by(EventLog.id).all()
    return [e.event_type for e in rows]


def _service(db, senders, **kwargs):
    return ReminderDeliveryService(db, senders_factory=senders, **kwargs)


class TestAllowedDelivery:
    def test_sent_once(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "sent"
        db_session.refresh(reminder)
        assert reminder.status == "sent"
        assert reminder.claimed_at is None
        assert as_utc(reminder.sent_at) == MONDAY_10
        assert _event_types(db_session, reminder.id) == ["reminder_due", "reminder_allowed", "reminder_triggered"]
        assert senders.calls("email") == 1

    def test_triggered_payload(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10, contact_id=7)
        _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        event = EventLogRepository(db_session).latest_event(user.id, ["reminder_triggered"])
        assert event.contact_id == 7
        assert event.source == "scheduler"
        assert event.payload_json["delivered_channels"] == ["email"]
        assert event.payload_json["category"] == "follow_up"

    def test_second_run_skipped(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        service = _service(db_session, senders)

        service.process_reminder(reminder.id, now=MONDAY_10)
        again = service.process_reminder(reminder.id, now=MONDAY_10)

        assert again.outcome == "skipped"
        assert again.reason == "already processed"
        assert senders.calls("email") == 1

    def test_overdue_logged_once(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        now = MONDAY_10 + timedelta(hours=2)

        _service(db_session, senders).process_reminder(reminder.id, now=now)

        overdue = db_session.query(EventLog).filter(EventLog.event_type == "reminder_overdue").all()
        assert len(overdue) == 1
        assert overdue[0].payload_json["minutes_late"] == 120
        assert overdue[0].idempotency_key == f"overdue:{reminder.id}"

    def test_reminder_due_queues_prompt(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        engine = PromptEngine(db_session)

        _service(db_session, senders, prompt_engine=engine).process_reminder(reminder.id, now=MONDAY_10)

        prompt = db_session.query(NotificationPromptModel).filter_by(user_id=user.id).one()
        assert prompt.reminder_id == reminder.id
        assert prompt.title == "Follow-up due"
        assert prompt.status == "queued"


class TestSuppressed:
    def test_weekend_rescheduled_to_monday(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, SATURDAY_10)

        result = _service(db_session, senders).process_reminder(reminder.id, now=SATURDAY_10)

        assert result.outcome == "suppressed"
        assert result.reason == "WORKDAY_DISABLED"
        monday_start = datetime(2026, 1, 12, 9, 0, tzinfo=_tz)
        assert result.next_attempt_at == monday_start
        db_session.refresh(reminder)
        assert reminder.status == "pending"
        assert reminder.claimed_at is None
        assert as_utc(reminder.scheduled_at) == monday_start
        assert senders.calls("email") == 0

        event = EventLogRepository(db_session).latest_event(user.id, ["reminder_suppressed"])
        assert event.payload_json["reason_code"] == "WORKDAY_DISABLED"
        assert datetime.fromisoformat(event.payload_json["next_attempt_time"]) == monday_start

    def test_rescheduled_reminder_delivered_monday(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, SATURDAY_10)
        service = _service(db_session, senders)
        service.process_reminder(reminder.id, now=SATURDAY_10)

        summary = service.process_due_reminders(now=datetime(2026, 1, 12, 9, 0, tzinfo=_tz))

        assert summary.sent == 1
        db_session.refresh(reminder)
        assert reminder.status == "sent"

    def test_daily_cap_after_ten_deliveries(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        for i in range(10):
            make_reminder(user.id, MONDAY_10, contact_id=100 + i)
        service = _service(db_session, senders)
        assert service.process_due_reminders(now=MONDAY_10).sent == 10

        eleventh = make_reminder(user.id, MONDAY_10, contact_id=200)
        result = service.process_reminder(eleventh.id, now=MONDAY_10 + timedelta(minutes=5))

        assert result.outcome == "suppressed"
        assert result.reason == "DAILY_CAP"
        assert result.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)

    def test_cooldown_same_contact(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        first = make_reminder(user.id, MONDAY_10, contact_id=5)
        second = make_reminder(user.id, MONDAY_10, contact_id=5)
        service = _service(db_session, senders)

        service.process_reminder(first.id, now=MONDAY_10)
        result = service.process_reminder(second.id, now=MONDAY_10 + timedelta(minutes=1))

        assert result.reason == "COOLDOWN_ACTIVE"
        assert result.next_attempt_at == MONDAY_10 + timedelta(minutes=30)

    def test_disabled_category_dropped(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        PreferencesService(db_session).update(user.id, category_notifications={"follow_up": False})
        reminder = make_reminder(user.id, MONDAY_10)

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "dropped"
        db_session.refresh(reminder)
        assert reminder.status == "failed"
        assert reminder.failure_reason == "CATEGORY_DISABLED"
        assert "reminder_triggered" not in _event_types(db_session, reminder.id)

    def test_do_not_disturb_defers_to_next_working_day(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        PreferencesService(db_session).update(
            user.id, dnd_enabled=True, dnd_override_rules={"emergency_contacts": [9], "override_keywords": ["asap"]},
        )
        reminder = make_reminder(user.id, MONDAY_10, message="Send slides", contact_id=5)

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.reason == "DND_ACTIVE"
        assert result.next_attempt_at == datetime(2026, 1, 13, 9, 0, tzinfo=_tz)
        db_session.refresh(reminder)
        assert reminder.status == "pending"
        assert senders.calls("email") == 0

    def test_do_not_disturb_overrides(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        PreferencesService(db_session).update(
            user.id, dnd_enabled=True, dnd_override_rules={"emergency_contacts": [9], "override_keywords": ["asap"]},
        )
        emergency = make_reminder(user.id, MONDAY_10, message="Send slides", contact_id=9)
        keyword = make_reminder(user.id, MONDAY_10, message="Reply ASAP to Dana", contact_id=5)
        service = _service(db_session, senders)

        assert service.process_reminder(emergency.id, now=MONDAY_10).outcome == "sent"
        assert service.process_reminder(keyword.id, now=MONDAY_10).outcome == "sent"
        assert senders.calls("email") == 2


class TestDeliveryFailure:
    def test_all_channels_failed(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        senders.script("email", (False, "smtp down"))

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "failed"
        db_session.refresh(reminder)
        assert reminder.status == "failed"
        assert reminder.failure_reason == "email: smtp down"
        event = EventLogRepository(db_session).latest_event(user.id, ["reminder_delivery_failed"])
        assert event.payload_json["errors"] == {"email": "smtp down"}

    def test_any_channel_success_counts(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        PreferencesService(db_session).update(user.id, notification_channels=["email", "in_app"])
        reminder = make_reminder(user.id, MONDAY_10)
        senders.script("email", (False, "bounced"))

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "sent"
        event = EventLogRepository(db_session).latest_event(user.id, ["reminder_triggered"])
        assert event.payload_json["channels"] == ["email", "in_app"]
        assert event.payload_json["delivered_channels"] == ["in_app"]


class TestLease:
    def test_fresh_claim_blocks_second_worker(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        reminder.claimed_at = MONDAY_10 - timedelta(minutes=1)
        db_session.commit()

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "skipped"
        assert senders.calls("email") == 0

    def test_stale_claim_taken_over(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10)
        reminder.claimed_at = MONDAY_10 - timedelta(minutes=30)
        db_session.commit()

        result = _service(db_session, senders).process_reminder(reminder.id, now=MONDAY_10)

        assert result.outcome == "sent"


class TestConcurrentTransition:
    def test_conditional_update_single_winner(self, file_engine):
        Session = sessionmaker(bind=file_engine)
        with Session() as setup:
            user = User(email="race@example.com", timezone="UTC")
            setup.add(user)
            setup.flush()
            reminder = Reminder(user_id=user.id, message="ping", category="generic", scheduled_at=MONDAY_10)
            setup.add(reminder)
            setup.commit()
            reminder_id = reminder.id

        with Session() as a, Session() as b:
            assert transition_reminder_status(a, reminder_id, "sent", MONDAY_10) is True
            assert transition_reminder_status(b, reminder_id, "failed", MONDAY_10) is False

        with Session() as check:
            assert check.get(Reminder, reminder_id).status == "sent"

    def test_parallel_workers_deliver_once(self, file_engine, senders):
        Session = sessionmaker(bind=file_engine)
        with Session() as setup:
            user = User(email="race@example.com", timezone="UTC")
            setup.add(user)
            setup.flush()
            reminder = Reminder(user_id=user.id, message="ping", category="generic", scheduled_at=MONDAY_10)
            setup.add(reminder)
            setup.commit()
            reminder_id = reminder.id

        workers = 4
        barrier = threading.Barrier(workers)

        def _work():
            with Session() as db:
                barrier.wait()
                return ReminderDeliveryService(db, senders_factory=senders).process_reminder(reminder_id, now=MONDAY_10)

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = [f.result() for f in [pool.submit(_work) for _ in range(workers)]]

        assert sorted(r.outcome for r in outcomes) == ["sent", "skipped", "skipped", "skipped"]
        assert senders.calls("email") == 1
        with Session() as check:
            assert check.get(Reminder, reminder_id).status == "sent"
            triggered = check.query(EventLog).filter(EventLog.event_type == "reminder_triggered").count()
            assert triggered == 1


class TestBatch:
    def test_broken_reminder_isolated(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        make_reminder(user.id, MONDAY_10, contact_id=1)
        make_reminder(user.id, MONDAY_10, contact_id=2)
        calls = {"n": 0}

        def flaky_factory(db, channels):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("provider misconfigured")
            return senders(db, channels)

        summary = ReminderDeliveryService(db_session, senders_factory=flaky_factory).process_due_reminders(now=MONDAY_10)

        assert summary.total == 2
        assert summary.errors == 1
        assert summary.sent == 1

    def test_future_reminders_untouched(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        later = make_reminder(user.id, MONDAY_10 + timedelta(hours=1))

        summary = _service(db_session, senders).process_due_reminders(now=MONDAY_10)

        assert summary.total == 0
        db_session.refresh(later)
        assert later.status == "pending"

    def test_summary_dict(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        make_reminder(user.id, MONDAY_10)
        make_reminder(user.id, SATURDAY_10, contact_id=3)

        data = _service(db_session, senders).process_due_reminders(now=MONDAY_10).to_dict()

        assert data["total"] == 2
        assert data["sent"] + data["suppressed"] == 2


class TestUserActions:
    def test_create_logs_manual_event(self, db_session, make_user, senders):
        user = make_user()
        reminder = _service(db_session, senders).create_reminder(
            user.id, "Send the deck", MONDAY_10 + timedelta(days=1), contact_id=4, now=MONDAY_10
        )
        assert reminder.category == "follow_up"
        assert _event_types(db_session, reminder.id) == ["manual_reminder_created"]

    def test_complete_once(self, db_session, make_user, make_reminder, senders):
        user = make_user()
        reminder = make_reminder(user.id, MONDAY_10 + timedelta(days=1))
        service = _service(db_session, senders)

        assert service.complete_reminder(reminder.id, user.id, now=MONDAY_10) is True
        assert service.complete_reminder(reminder.id, user.id, now=MONDAY_10) is False

        db_session.refresh(reminder)
        assert reminder.status == "sent"
        assert _event_types(db_session, reminder.id).count("reminder_completed") == 1
