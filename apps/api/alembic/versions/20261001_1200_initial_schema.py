"""Initial schema (accounts, installations, tickets, messages, dedup, webhooks, jobs)

Revision ID: 20261001_1200
Revises:
Create Date: 2026-10-01

"""

from __future__ import annotations

from alembic import op

revision = "20261001_1200"
down_revision = None
branch_labels = None
depends_on = None

_ENUM_TYPES: tuple[tuple[str, str], ...] = (
    ("platform", "'slack','discord','telegram'"),
    ("ticket_status", "'OPEN','PENDING','RESOLVED','CLOSED'"),
    ("message_source", "'visitor','slack','discord','telegram','agent_dashboard','system'"),
    ("webhook_delivery_status", "'pending','success','failed'"),
    ("job_status", "'queued','running','succeeded','failed','cancelled'"),
    (
        "job_type",
        "'slack_event','discord_event','telegram_event','webhook_delivery','event_dedup_purge'",
    ),
)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    for name, labels in _ENUM_TYPES:
        op.execute(
            f"""
DO $$ BEGIN
  CREATE TYPE {name} AS ENUM ({labels});
EXCEPTION WHEN duplicate_object THEN NULL; END $$;
"""
        )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS accounts (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  name text NOT NULL,
  active_platform platform,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS installations (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  platform platform NOT NULL,
  external_id text NOT NULL,
  external_name text,
  bot_user_id text,
  encrypted_access_token bytea,
  scopes text,
  installed_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (account_id, platform)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS installations_external_idx ON installations (platform, external_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS channel_configs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  platform platform NOT NULL,
  channel_id text NOT NULL,
  channel_name text,
  is_default boolean NOT NULL DEFAULT false,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (account_id, platform, channel_id)
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS channel_configs_default_uq
  ON channel_configs (account_id, platform)
  WHERE is_default;
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS telegram_group_configs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  chat_id bigint NOT NULL,
  chat_title text,
  is_forum_enabled boolean NOT NULL DEFAULT false,
  is_default boolean NOT NULL DEFAULT false,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (account_id, chat_id)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS oauth_states (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  platform platform NOT NULL,
  state text NOT NULL UNIQUE,
  created_at timestamptz NOT NULL DEFAULT now(),
  expires_at timestamptz NOT NULL,
  used_at timestamptz
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS tickets (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  status ticket_status NOT NULL DEFAULT 'OPEN',
  subject text,
  visitor_email text,
  visitor_name text,

  slack_channel_id text,
  slack_thread_ts text,
  slack_root_message_ts text,

  discord_channel_id text,
  discord_thread_id text,
  discord_message_id text,

  telegram_chat_id bigint,
  telegram_topic_id bigint,
  telegram_message_id bigint,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    # Thread anchors resolve to at most one ticket per account.
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS tickets_slack_thread_uq
  ON tickets (account_id, slack_thread_ts)
  WHERE slack_thread_ts IS NOT NULL;
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS tickets_discord_thread_uq
  ON tickets (account_id, discord_thread_id)
  WHERE discord_thread_id IS NOT NULL;
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS tickets_telegram_topic_uq
  ON tickets (account_id, telegram_chat_id, telegram_topic_id)
  WHERE telegram_topic_id IS NOT NULL;
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS messages (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  ticket_id uuid NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  source message_source NOT NULL,
  body text NOT NULL,
  platform_message_id text,
  platform_user_id text,
  platform_user_name text,
  raw_event jsonb,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS messages_ticket_idx ON messages (ticket_id, created_at);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS event_dedups (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  platform platform NOT NULL,
  external_tenant_id text NOT NULL,
  platform_event_id text NOT NULL,
  account_id uuid REFERENCES accounts(id) ON DELETE CASCADE,
  processed_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (platform, external_tenant_id, platform_event_id)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS event_dedups_processed_idx ON event_dedups (processed_at);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS webhook_endpoints (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  url text NOT NULL,
  secret text NOT NULL,
  enabled boolean NOT NULL DEFAULT true,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS webhook_endpoints_account_idx ON webhook_endpoints (account_id, enabled);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS webhook_deliveries (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  endpoint_id uuid NOT NULL REFERENCES webhook_endpoints(id) ON DELETE CASCADE,
  account_id uuid NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
  ticket_id uuid REFERENCES tickets(id) ON DELETE SET NULL,
  message_id uuid REFERENCES messages(id) ON DELETE SET NULL,
  url text NOT NULL,
  event_type text NOT NULL,
  idempotency_key text NOT NULL UNIQUE,
  payload jsonb NOT NULL,
  secret_snapshot text NOT NULL,
  attempt_count int NOT NULL DEFAULT 0,
  status webhook_delivery_status NOT NULL DEFAULT 'pending',
  last_status_code int,
  last_error text,
  last_attempt_at timestamptz,
  next_attempt_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE INDEX IF NOT EXISTS webhook_deliveries_endpoint_idx
  ON webhook_deliveries (endpoint_id, created_at DESC, id DESC);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS webhook_delivery_attempts (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  delivery_id uuid NOT NULL REFERENCES webhook_deliveries(id) ON DELETE CASCADE,
  attempt_number int NOT NULL,
  status_code int,
  error text,
  duration_ms int NOT NULL DEFAULT 0,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (delivery_id, attempt_number)
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS bg_jobs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  account_id uuid REFERENCES accounts(id) ON DELETE CASCADE,

  queue text NOT NULL,
  type job_type NOT NULL,
  status job_status NOT NULL DEFAULT 'queued',

  run_at timestamptz NOT NULL DEFAULT now(),
  attempts int NOT NULL DEFAULT 0,
  max_attempts int NOT NULL DEFAULT 3,

  locked_at timestamptz,
  locked_by text,
  last_error text,

  dedupe_key text,
  payload jsonb NOT NULL DEFAULT '{}'::jsonb,

  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS bg_jobs_runner_idx ON bg_jobs (queue, status, run_at);")
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS bg_jobs_dedupe_uq
  ON bg_jobs (queue, dedupe_key)
  WHERE dedupe_key IS NOT NULL AND status IN ('queued','running');
"""
    )

    # Keep updated_at consistent for raw SQL updates issued by the worker.
    op.execute(
        """
CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
BEGIN
  NEW.updated_at = now();
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""
    )
    for table in ("accounts", "installations", "tickets", "webhook_endpoints", "bg_jobs"):
        op.execute(
            f"""
DO $$
BEGIN
  IF NOT EXISTS (
    SELECT 1 FROM pg_trigger WHERE tgname = 'set_updated_at_{table}'
  ) THEN
    CREATE TRIGGER set_updated_at_{table}
    BEFORE UPDATE ON {table}
    FOR EACH ROW
    EXECUTE FUNCTION set_updated_at();
  END IF;
END $$;
"""
        )


def downgrade() -> None:
    for table in (
        "bg_jobs",
        "webhook_delivery_attempts",
        "webhook_deliveries",
        "webhook_endpoints",
        "event_dedups",
        "messages",
        "tickets",
        "oauth_states",
        "telegram_group_configs",
        "channel_configs",
        "installations",
        "accounts",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")

    op.execute("DROP FUNCTION IF EXISTS set_updated_at();")
    for name, _labels in reversed(_ENUM_TYPES):
        op.execute(f"DROP TYPE IF EXISTS {name};")
