"""create decision pipeline tables

Revision ID: 3f9c2a7d1e04
Revises:
Create Date: 2026-10-19 09:12:44.118203

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1e04'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # 1. users
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('plan_status', sa.String(length=20), nullable=True),
        sa.Column('prompt_notifications_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )

    # 2. contacts
    op.create_table(
        'contacts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_contacts_user_id', 'contacts', ['user_id'])

    # 3. reminders
    op.create_table(
        'reminders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('contact_id', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('category', sa.String(length=20), nullable=False, server_default='generic'),
        sa.Column('scheduled_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('snoozed_from_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_reminders_user_id', 'reminders', ['user_id'])
    op.create_index('ix_reminders_contact_id', 'reminders', ['contact_id'])
    op.create_index('ix_reminders_status_scheduled', 'reminders', ['status', 'scheduled_at'])

    # 4. event_log (append-only)
    op.create_table(
        'event_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('payload_json', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('reminder_id', sa.Integer(), nullable=True),
        sa.Column('contact_id', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='app'),
        sa.Column('occurred_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_event_log_user_id', 'event_log', ['user_id'])
    op.create_index('ix_event_log_event_type', 'event_log', ['event_type'])
    op.create_index('ix_event_log_reminder_id', 'event_log', ['reminder_id'])
    op.create_index('ix_event_log_occurred_at', 'event_log', ['occurred_at'])
    op.create_index('ix_event_log_user_type_occurred', 'event_log', ['user_id', 'event_type', 'occurred_at'])

    # 5. scheduling_preferences
    op.create_table(
        'scheduling_preferences',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('working_hours_start', sa.Time(), nullable=False, server_default='09:00'),
        sa.Column('working_hours_end', sa.Time(), nullable=False, server_default='17:30'),
        sa.Column('working_days', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'[0, 1, 2, 3, 4]'::jsonb")),
        sa.Column('quiet_hours_start', sa.Time(), nullable=True),
        sa.Column('quiet_hours_end', sa.Time(), nullable=True),
        sa.Column('max_reminders_per_day', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('allow_weekends', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('cooldown_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('snooze_options', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('follow_up_cadence', sa.String(length=20), nullable=False, server_default='balanced'),
        sa.Column('smart_suggestions_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('category_notifications', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('notification_channels', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'[\"email\"]'::jsonb")),
        sa.Column('dnd_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('dnd_override_rules', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # 6. digest_preferences
    op.create_table(
        'digest_preferences',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('weekly_digest_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('digest_day', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('digest_time', sa.Time(), nullable=False, server_default='08:00'),
        sa.Column('digest_channel', sa.String(length=10), nullable=False, server_default='email'),
        sa.Column('digest_detail_level', sa.String(length=10), nullable=False, server_default='standard'),
        sa.Column('only_when_active', sa.Boolean(), nullable=False, server_default='false'),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # 7. trigger_rules
    op.create_table(
        'trigger_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('rule_name', sa.String(length=64), nullable=False),
        sa.Column('trigger_event_type', sa.String(length=64), nullable=False),
        sa.Column('conditions', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('template_key', sa.String(length=64), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('cooldown_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_per_day', sa.Integer(), nullable=True),
        sa.Column('ttl_seconds', sa.Integer(), nullable=False, server_default='86400'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'rule_name', name='uq_trigger_rules_user_rule'),
    )
    op.create_index('ix_trigger_rules_user_id', 'trigger_rules', ['user_id'])
    op.create_index('ix_trigger_rules_user_event', 'trigger_rules', ['user_id', 'trigger_event_type'])

    # 8. notification_prompts
    op.create_table(
        'notification_prompts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('reminder_id', sa.Integer(), nullable=True),
        sa.Column('contact_id', sa.Integer(), nullable=True),
        sa.Column('rule_id', sa.Integer(), nullable=False),
        sa.Column('source_event_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='queued'),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('queued_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('displayed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_event_id'),
    )
    op.create_index('ix_notification_prompts_user_id', 'notification_prompts', ['user_id'])
    op.create_index('ix_notification_prompts_rule_id', 'notification_prompts', ['rule_id'])
    op.create_index('ix_notification_prompts_user_status', 'notification_prompts', ['user_id', 'status'])

    # 9. digest_jobs
    op.create_table(
        'digest_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('week_start', sa.Date(), nullable=False),
        sa.Column('week_end', sa.Date(), nullable=False),
        sa.Column('dedupe_key', sa.String(length=64), nullable=False),
        sa.Column('variant', sa.String(length=20), nullable=True),
        sa.Column('stats_data', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('status', sa.String(length=10), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )
    op.create_index('ix_digest_jobs_user_id', 'digest_jobs', ['user_id'])

    # 10. user_streaks
    op.create_table(
        'user_streaks',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('current_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('best_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_activity_date', sa.Date(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # 11. in_app_notifications
    op.create_table(
        'in_app_notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('reminder_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_in_app_notifications_user_id', 'in_app_notifications', ['user_id'])

    # 12. push_subscriptions
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('p256dh', sa.Text(), nullable=False),
        sa.Column('auth', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('endpoint'),
    )
    op.create_index('ix_push_subscriptions_user_id', 'push_subscriptions', ['user_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('push_subscriptions')
    op.drop_table('in_app_notifications')
    op.drop_table('user_streaks')
    op.drop_table('digest_jobs')
    op.drop_table('notification_prompts')
    op.drop_table('trigger_rules')
    op.drop_table('digest_preferences')
    op.drop_table('scheduling_preferences')
    op.drop_table('event_log')
    op.drop_table('reminders')
    op.drop_table('contacts')
    op.drop_table('users')
