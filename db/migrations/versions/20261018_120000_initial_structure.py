"""Initial structure: owners, sessions, capacity ledger, addresses, keys, events

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "owners",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column("api_key_hash", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("allowed_source_cidrs", postgresql.JSONB(), nullable=True),
        sa.Column("max_concurrent_sessions", sa.Integer(), nullable=False),
        sa.Column("total_sessions_created", sa.BigInteger(), nullable=False),
        sa.Column("last_session_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admission_seq", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("max_concurrent_sessions >= 1", name="owners_quota_positive"),
    )
    op.create_index("ix_owners_api_key_hash", "owners", ["api_key_hash"], unique=True)

    op.create_table(
        "vpn_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(64), sa.ForeignKey("owners.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("client_address", sa.String(18), nullable=True),
        sa.Column("compute_ref", sa.String(255), nullable=True),
        sa.Column("public_host", sa.String(255), nullable=True),
        sa.Column("vpn_port", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idle_timeout_minutes", sa.Integer(), nullable=False),
        sa.Column("provision_attempts", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("bytes_transferred", sa.BigInteger(), nullable=True),
        sa.Column("source_ip", sa.String(45), nullable=True),
        sa.CheckConstraint(
            "idle_timeout_minutes BETWEEN 1 AND 1440",
            name="vpn_sessions_idle_timeout_range",
        ),
        sa.CheckConstraint(
            "provision_attempts >= 0", name="vpn_sessions_attempts_non_negative"
        ),
        sa.CheckConstraint(
            "(status = 'terminated') = (terminated_at IS NOT NULL)",
            name="vpn_sessions_terminated_at_iff_terminated",
        ),
        sa.CheckConstraint(
            "status IN ('provisioning', 'active', 'idle', 'terminating', 'terminated')",
            name="vpn_sessions_status_valid",
        ),
    )
    op.create_index("idx_vpn_sessions_owner_status", "vpn_sessions", ["owner_id", "status"])
    op.create_index(
        "idx_vpn_sessions_status_activity", "vpn_sessions", ["status", "last_activity_at"]
    )
    op.create_index("idx_vpn_sessions_created_at", "vpn_sessions", ["created_at"])

    op.create_table(
        "capacity_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("active_compute_units", sa.Integer(), nullable=False),
        sa.Column("active_sessions", sa.Integer(), nullable=False),
        sa.Column("total_provisioning_attempts", sa.BigInteger(), nullable=False),
        sa.Column("total_provisioning_failures", sa.BigInteger(), nullable=False),
        sa.Column("total_bytes_transferred", sa.BigInteger(), nullable=False),
        sa.Column("at_capacity", sa.Boolean(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("id = 1", name="capacity_ledger_singleton"),
        sa.CheckConstraint(
            "active_sessions >= 0 AND active_compute_units >= 0",
            name="capacity_ledger_non_negative",
        ),
        sa.CheckConstraint(
            "active_sessions <= active_compute_units",
            name="capacity_ledger_sessions_within_units",
        ),
        sa.CheckConstraint(
            "total_provisioning_failures <= total_provisioning_attempts",
            name="capacity_ledger_failures_within_attempts",
        ),
    )
    op.execute(
        "INSERT INTO capacity_ledger (id, active_compute_units, active_sessions, "
        "total_provisioning_attempts, total_provisioning_failures, "
        "total_bytes_transferred, at_capacity, version, last_updated) "
        "VALUES (1, 0, 0, 0, 0, 0, false, 1, now())"
    )

    op.create_table(
        "address_allocations",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "session_id", sa.String(36), sa.ForeignKey("vpn_sessions.id"), nullable=False
        ),
        sa.Column("address", sa.String(18), nullable=False),
        sa.Column("slot", sa.Integer(), nullable=False),
        sa.Column("allocated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_address_allocations_live_slot",
        "address_allocations",
        ["slot"],
        unique=True,
        postgresql_where=sa.text("expires_at IS NULL"),
    )
    op.create_index(
        "idx_address_allocations_session", "address_allocations", ["session_id"]
    )
    op.create_index(
        "idx_address_allocations_expires_at", "address_allocations", ["expires_at"]
    )

    op.create_table(
        "session_keys",
        sa.Column("handle", sa.String(64), primary_key=True),
        sa.Column(
            "session_id", sa.String(36), sa.ForeignKey("vpn_sessions.id"), nullable=False
        ),
        sa.Column("role", sa.String(10), nullable=False),
        sa.Column("public_key", sa.String(64), nullable=False),
        sa.Column("encrypted_private_key", sa.LargeBinary(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_session_keys_session_role",
        "session_keys",
        ["session_id", "role"],
        unique=True,
    )

    op.create_table(
        "operational_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("event_date", sa.String(10), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("outcome", sa.String(10), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        sa.Column("source_ip", sa.String(45), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
    )
    op.create_index("idx_operational_events_timestamp", "operational_events", ["timestamp"])
    op.create_index("idx_operational_events_type", "operational_events", ["event_type"])
    op.create_index("idx_operational_events_session", "operational_events", ["session_id"])
    op.create_index(
        "idx_operational_events_owner_date", "operational_events", ["owner_id", "event_date"]
    )


def downgrade() -> None:
    op.drop_table("operational_events")
    op.drop_table("session_keys")
    op.drop_table("address_allocations")
    op.drop_table("capacity_ledger")
    op.drop_table("vpn_sessions")
    op.drop_table("owners")
