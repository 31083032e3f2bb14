"""
Digest message content per variant (subject, plain text, minimal HTML).
"""
from html import escape

from followup.application.delivery import MessageContent
from followup.config import get_settings
from followup.domain.digest import DigestStats, DigestVariant

_SUBJECTS = {
    DigestVariant.STANDARD: "Your weekly follow-up summary: {completion_rate}% completed",
    DigestVariant.LIGHT: "Your week in follow-ups",
    DigestVariant.RECOVERY: "A fresh start for next week",
    DigestVariant.NO_ACTIVITY: "Ready to plan your follow-ups?",
}

_INTROS = {
    DigestVariant.STANDARD: "You completed {completed} of {triggered} reminders this week.",
    DigestVariant.LIGHT: "A quiet week: {created} reminders created, {completed} completed.",
    DigestVariant.RECOVERY: (
        "This week got busy: {overdue} reminders went overdue and {snoozed} were snoozed. "
        "Pick one follow-up to close today."
    ),
    DigestVariant.NO_ACTIVITY: "No reminders this week. Add a follow-up to keep your contacts warm.",
}


def week_range(stats: DigestStats) -> str:
    return f"{stats.week_start.strftime('%b %d')} - {stats.week_end.strftime('%b %d')}"


def _lines(variant: DigestVariant, stats: DigestStats) -> list[str]:
    o = stats.overall
    lines = [
        _INTROS[variant].format(
            completed=o.reminders_completed,
            triggered=o.total_reminders_triggered,
            created=o.total_reminders_created,
            overdue=o.reminders_overdue,
            snoozed=o.reminders_snoozed,
        ),
    ]
    if variant in (DigestVariant.STANDARD, DigestVariant.RECOVERY):
        lines += [
            "",
            f"- Reminders created: {o.total_reminders_created}",
            f"- Reminders completed: {o.reminders_completed}",
            f"- Completion rate: {o.completion_rate}%",
            f"- Reminders snoozed: {o.reminders_snoozed}",
        ]
        if o.reminders_suppressed:
            lines.append(f"- Held back (quiet hours, caps, cooldowns): {o.reminders_suppressed}")
        if stats.per_contact:
            lines += ["", "Top contacts:"]
            lines += [
                f"- {c.contact_name}: {c.reminders_completed} completed, {c.reminders_overdue} overdue"
                for c in stats.per_contact
            ]
    fwd = stats.forward_looking
    if variant == DigestVariant.RECOVERY and fwd.longest_overdue_reminder:
        item = fwd.longest_overdue_reminder
        who = f" ({item.contact_name})" if item.contact_name else ""
        lines += ["", f"Oldest open item{who}: {item.message}, {item.days_overdue} days overdue"]
    if variant != DigestVariant.NO_ACTIVITY and fwd.upcoming_reminders_next_7_days:
        lines += ["", f"Coming up: {fwd.upcoming_reminders_next_7_days} reminders in the next 7 days"]
    return lines


def build_digest_content(variant: DigestVariant, stats: DigestStats) -> MessageContent:
    base_url = get_settings().APP_BASE_URL
    subject = _SUBJECTS[variant].format(completion_rate=stats.overall.completion_rate)
    lines = _lines(variant, stats)
    text = "\n".join(
        [f"Week of {week_range(stats)}", ""] + lines + ["", f"Dashboard: {base_url}/dashboard"]
    )
    html = "".join(f"<p>{escape(line)}</p>" for line in lines if line)
    return MessageContent(
        kind="digest",
        subject=subject,
        text=text,
        html=f"<h2>{escape(subject)}</h2>{html}",
        url=f"{base_url}/dashboard",
        data={"variant": variant.value, "week_start": stats.week_start.isoformat(), "stats": stats.to_dict()},
    )
