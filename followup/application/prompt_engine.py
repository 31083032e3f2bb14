"""
Prompt engine: turns trigger-eligible events into at most one queued prompt.

Flow for one incoming event:
  1. provision the default rule set for the user (once, lazily)
  2. order the user's enabled rules for the event type by priority
  3. gather a GateFacts snapshot (dedupe, cooldowns, caps) in a few queries
  4. pick the first rule passing every gate, render its template, insert
  5. a UNIQUE(source_event_id) violation means another worker won: no-op

Also owns the prompt state machine (displayed / dismissed / acted / expired).
"""
import logging
from datetime import datetime, time, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from followup.config import get_settings
from followup.domain.events import EventSource, EventType
from followup.domain.trigger_rules import (
    DEFAULT_RULES,
    TRIGGER_EVENT_TYPES,
    GateFacts,
    PromptStatus,
    PromptTransitionError,
    TriggerEvent,
    TriggerRule,
    clamp_priority,
    first_failed_gate,
    order_rules,
    render_prompt,
    select_winning_rule,
    sources_for,
)
from followup.domain.working_hours import as_utc
from followup.infrastructure.db.models import (
    Contact,
    EventLog,
    NotificationPromptModel,
    Reminder,
    TriggerRuleModel,
    User,
)
from followup.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)

_DISPLAYED_STATUSES = (PromptStatus.DISPLAYED.value, PromptStatus.ACTED.value, PromptStatus.DISMISSED.value)

_TRANSITION_EVENTS = {
    PromptStatus.DISPLAYED: EventType.PROMPT_DISPLAYED,
    PromptStatus.DISMISSED: EventType.PROMPT_DISMISSED,
    PromptStatus.ACTED: EventType.PROMPT_ACTED,
    PromptStatus.EXPIRED: EventType.PROMPT_EXPIRED,
}


class PromptNotFoundError(LookupError):
    pass


def _rule_from_model(row: TriggerRuleModel) -> TriggerRule:
    return TriggerRule(
        id=row.id,
        rule_name=row.rule_name,
        trigger_event_type=row.trigger_event_type,
        template_key=row.template_key,
        priority=row.priority,
        cooldown_seconds=row.cooldown_seconds,
        max_per_day=row.max_per_day,
        ttl_seconds=row.ttl_seconds,
        enabled=row.enabled,
        conditions=dict(row.conditions or {}),
    )


def _trigger_event(event: EventLog) -> TriggerEvent:
    return TriggerEvent(
        id=event.id,
        user_id=event.user_id,
        event_type=event.event_type,
        occurred_at=as_utc(event.occurred_at),
        payload=dict(event.payload_json or {}),
        contact_id=event.contact_id,
        reminder_id=event.reminder_id,
    )


class PromptEngine:
    def __init__(self, db: Session, global_cooldown_seconds: int | None = None):
        self.db = db
        self.events = EventLogRepository(db)
        if global_cooldown_seconds is None:
            global_cooldown_seconds = get_settings().GLOBAL_PROMPT_COOLDOWN_SECONDS
        self.global_cooldown_seconds = global_cooldown_seconds

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def ensure_default_rules(self, user_id: int) -> None:
        """Provision DEFAULT_RULES if the user has no rules yet."""
        exists = self.db.query(TriggerRuleModel.id).filter(TriggerRuleModel.user_id == user_id).first()
        if exists:
            return
        for default in DEFAULT_RULES:
            self.db.add(TriggerRuleModel(
                user_id=user_id,
                rule_name=default.rule_name,
                trigger_event_type=default.trigger_event_type,
                conditions=dict(default.conditions),
                template_key=default.template_key,
                priority=default.priority,
                cooldown_seconds=default.cooldown_seconds,
                max_per_day=default.max_per_day,
                ttl_seconds=default.ttl_seconds,
                enabled=default.enabled,
            ))
        try:
            self.db.commit()
            logger.info("Provisioned %d default trigger rules for user_id=%s", len(DEFAULT_RULES), user_id)
        except IntegrityError:
            # Concurrent provisioning for the same user already inserted them
            self.db.rollback()

    def rules_for(self, user_id: int, event_type: str) -> list[TriggerRule]:
        rows = (
            self.db.query(TriggerRuleModel)
            .filter(
                TriggerRuleModel.user_id == user_id,
                TriggerRuleModel.trigger_event_type == event_type,
            )
            .all()
        )
        return order_rules([_rule_from_model(r) for r in rows], event_type)

    # ------------------------------------------------------------------
    # Gate facts
    # ------------------------------------------------------------------

    def _gather_facts(self, user: User, event: TriggerEvent, rules: list[TriggerRule], now: datetime) -> GateFacts:
        rule_ids = [r.id for r in rules]
        P = NotificationPromptModel

        has_prompt = self.db.query(P.id).filter(P.source_event_id == event.id).first() is not None

        last_displayed = (
            self.db.query(func.max(P.displayed_at))
            .filter(P.user_id == user.id, P.displayed_at.isnot(None))
            .scalar()
        )

        last_rule_display = {
            rule_id: as_utc(last)
            for rule_id, last in (
                self.db.query(P.rule_id, func.max(P.displayed_at))
                .filter(
                    P.user_id == user.id,
                    P.rule_id.in_(rule_ids),
                    P.status.in_(_DISPLAYED_STATUSES),
                    P.displayed_at.isnot(None),
                )
                .group_by(P.rule_id)
                .all()
            )
            if last is not None
        }

        entity_counts: dict[int, int] = {}
        if event.contact_id is not None:
            day_start = datetime.combine(now.astimezone(timezone.utc).date(), time(0, 0), tzinfo=timezone.utc)
            entity_counts = dict(
                self.db.query(P.rule_id, func.count(P.id))
                .filter(
                    P.user_id == user.id,
                    P.contact_id == event.contact_id,
                    P.rule_id.in_(rule_ids),
                    P.queued_at >= day_start,
                )
                .group_by(P.rule_id)
                .all()
            )

        return GateFacts(
            event=event,
            now=now,
            plan_status=user.plan_status,
            prompts_enabled=bool(user.prompt_notifications_enabled),
            source_event_has_prompt=has_prompt,
            last_displayed_at=as_utc(last_displayed) if last_displayed else None,
            last_rule_display=last_rule_display,
            rule_entity_count_today=entity_counts,
            global_cooldown_seconds=self.global_cooldown_seconds,
        )

    # ------------------------------------------------------------------
    # Offer
    # ------------------------------------------------------------------

    def offer_event(self, event: EventLog | int, now: datetime | None = None) -> NotificationPromptModel | None:
        """
        Offer a logged event to the rule engine.

        Commits pending work first: the source event must be durable before a
        prompt references it. Returns the queued prompt or None.
        """
        now = as_utc(now or datetime.now(timezone.utc))
        if isinstance(event, int):
            event = self.events.get_event(event)
            if event is None:
                return None
        if event.event_type not in TRIGGER_EVENT_TYPES:
            return None
        self.db.commit()

        user = self.db.get(User, event.user_id)
        if user is None:
            logger.warning("Event %s references unknown user_id=%s", event.id, event.user_id)
            return None

        self.ensure_default_rules(user.id)
        rules = self.rules_for(user.id, event.event_type)
        if not rules:
            return None

        trig = _trigger_event(event)
        facts = self._gather_facts(user, trig, rules, now)

        def _eligible(rule: TriggerRule) -> bool:
            failed = first_failed_gate(rule, facts)
            if failed:
                logger.debug("Rule %s rejected event %s at gate %s", rule.rule_name, trig.id, failed)
            return failed is None

        winner = select_winning_rule(rules, _eligible)
        if winner is None:
            return None
        return self._create_prompt(user, trig, winner, now)

    def _create_prompt(
        self, user: User, event: TriggerEvent, rule: TriggerRule, now: datetime
    ) -> NotificationPromptModel | None:
        contact = self.db.get(Contact, event.contact_id) if event.contact_id else None
        reminder = self.db.get(Reminder, event.reminder_id) if event.reminder_id else None
        rendered = render_prompt(
            rule.template_key,
            event,
            now,
            contact_name=contact.name if contact else None,
            reminder_message=reminder.message if reminder else None,
        )
        prompt = NotificationPromptModel(
            user_id=user.id,
            reminder_id=event.reminder_id,
            contact_id=event.contact_id,
            rule_id=rule.id,
            source_event_id=event.id,
            title=rendered.title,
            message=rendered.message,
            priority=clamp_priority(rule.priority),
            status=PromptStatus.QUEUED.value,
            payload=rendered.payload,
            queued_at=now,
            expires_at=now + timedelta(seconds=rule.ttl_seconds),
        )
        try:
            self.db.add(prompt)
            self.db.commit()
        except IntegrityError:
            # UNIQUE(source_event_id): another worker already queued a prompt for this event
            self.db.rollback()
            logger.info("Prompt for source event %s already exists, skipping", event.id)
            return None

        self.events.append_event(
            user_id=user.id,
            event_type=EventType.PROMPT_QUEUED,
            payload={"prompt_id": prompt.id, "rule_id": rule.id},
            occurred_at=now,
            reminder_id=event.reminder_id,
            contact_id=event.contact_id,
            source=EventSource.SYSTEM,
        )
        self.db.commit()
        return prompt

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def next_prompt(self, user_id: int, now: datetime | None = None) -> NotificationPromptModel | None:
        """Highest-priority unexpired queued prompt."""
        now = as_utc(now or datetime.now(timezone.utc))
        P = NotificationPromptModel
        return (
            self.db.query(P)
            .filter(P.user_id == user_id, P.status == PromptStatus.QUEUED.value, P.expires_at > now)
            .order_by(P.priority.desc(), P.queued_at.asc(), P.id.asc())
            .first()
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(
        self,
        prompt_id: int,
        user_id: int,
        target: PromptStatus,
        now: datetime | None = None,
        action: str | None = None,
    ) -> NotificationPromptModel:
        """
        Conditional status change; exactly one caller wins a concurrent race.

        Raises PromptNotFoundError for unknown / foreign prompts and
        PromptTransitionError when the current status does not allow target.
        """
        now = as_utc(now or datetime.now(timezone.utc))
        target = PromptStatus(target)
        P = NotificationPromptModel

        values: dict = {P.status: target.value}
        if target == PromptStatus.DISPLAYED:
            values[P.displayed_at] = now
        else:
            values[P.resolved_at] = now

        query = self.db.query(P).filter(
            P.id == prompt_id,
            P.user_id == user_id,
            P.status.in_([s.value for s in sources_for(target)]),
        )
        if target == PromptStatus.DISPLAYED:
            query = query.filter(P.expires_at > now)
        updated = query.update(values, synchronize_session=False)

        prompt = self.db.query(P).filter(P.id == prompt_id, P.user_id == user_id).first()
        if prompt is None:
            self.db.rollback()
            raise PromptNotFoundError(f"Prompt {prompt_id} not found")
        if not updated:
            self.db.rollback()
            raise PromptTransitionError(f"Cannot move prompt {prompt_id} from {prompt.status} to {target.value}")

        self.events.append_event(
            user_id=user_id,
            event_type=_TRANSITION_EVENTS[target],
            payload={"prompt_id": prompt.id, "rule_id": prompt.rule_id, "action": action},
            occurred_at=now,
            reminder_id=prompt.reminder_id,
            contact_id=prompt.contact_id,
            source=EventSource.SYSTEM if target == PromptStatus.EXPIRED else EventSource.APP,
        )
        self.db.commit()
        self.db.refresh(prompt)
        return prompt

    def expire_stale_prompts(self, now: datetime | None = None) -> int:
        """Move queued/displayed prompts past expires_at to expired."""
        now = as_utc(now or datetime.now(timezone.utc))
        P = NotificationPromptModel
        stale = (
            self.db.query(P.id, P.user_id)
            .filter(
                P.status.in_([PromptStatus.QUEUED.value, PromptStatus.DISPLAYED.value]),
                P.expires_at <= now,
            )
            .all()
        )
        expired = 0
        for prompt_id, user_id in stale:
            try:
                self.transition(prompt_id, user_id, PromptStatus.EXPIRED, now=now)
                expired += 1
            except PromptTransitionError:
                # Resolved by the user between the scan and the update
                continue
        if expired:
            logger.info("Expired %d stale prompts", expired)
        return expired
