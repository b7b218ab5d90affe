"""Initial schema: clients, consultations, applications and payments.

Revision ID: 001
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Clients
    # ========================================================================
    op.create_table(
        "clients",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False, server_default=""),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("setup_token", sa.String(128), nullable=True),
        sa.Column("setup_token_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_clients"),
        sa.UniqueConstraint("setup_token", name="uq_clients_setup_token"),
    )
    op.create_index("ix_clients_email", "clients", ["email"], unique=True)

    # ========================================================================
    # Consultations
    # ========================================================================
    op.create_table(
        "consultations",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("adviser_id", sa.String(64), nullable=True),
        sa.Column("slot_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("method", sa.String(30), nullable=False),
        sa.Column("consultation_type", sa.String(30), nullable=False, server_default="initial"),
        sa.Column("status", sa.String(30), nullable=False, server_default="hold"),
        sa.Column("payment_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rescheduled_from_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("reschedule_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("client_message", sa.Text(), nullable=True),
        sa.Column("visa_pathways", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("meeting_link", sa.String(500), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(255), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_consultations"),
        sa.ForeignKeyConstraint(
            ["client_id"],
            ["clients.id"],
            name="fk_consultations_client_id_clients",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["rescheduled_from_id"],
            ["consultations.id"],
            name="fk_consultations_rescheduled_from_id_consultations",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_consultations_client_id", "consultations", ["client_id"])
    op.create_index("ix_consultations_adviser_id", "consultations", ["adviser_id"])
    op.create_index("ix_consultations_status", "consultations", ["status"])
    op.create_index("ix_consultations_payment_id", "consultations", ["payment_id"])
    op.create_index(
        "ix_consultations_status_expires_at",
        "consultations",
        ["status", "expires_at"],
    )

    # At most one slot-occupying consultation per start time
    op.create_index(
        "uq_consultations_active_slot",
        "consultations",
        ["slot_start"],
        unique=True,
        postgresql_where=sa.text("status IN ('hold', 'confirmed', 'completed')"),
    )

    # ========================================================================
    # Applications
    # ========================================================================
    op.create_table(
        "applications",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("consultation_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("visa_type", sa.String(100), nullable=False),
        sa.Column("stage", sa.String(30), nullable=False, server_default="consultation"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("deposit_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("timeline", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_applications"),
        sa.ForeignKeyConstraint(
            ["client_id"],
            ["clients.id"],
            name="fk_applications_client_id_clients",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["consultation_id"],
            ["consultations.id"],
            name="fk_applications_consultation_id_consultations",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_applications_client_id", "applications", ["client_id"])
    op.create_index("ix_applications_stage", "applications", ["stage"])

    # ========================================================================
    # Payments
    # ========================================================================
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("consultation_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("application_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("payment_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("gateway_reference", sa.String(255), nullable=True),
        sa.Column("invoice_number", sa.String(50), nullable=True),
        sa.Column("invoice_url", sa.String(500), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.ForeignKeyConstraint(
            ["client_id"],
            ["clients.id"],
            name="fk_payments_client_id_clients",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["consultation_id"],
            ["consultations.id"],
            name="fk_payments_consultation_id_consultations",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["applications.id"],
            name="fk_payments_application_id_applications",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("transaction_id", name="uq_payments_transaction_id"),
        sa.UniqueConstraint("invoice_number", name="uq_payments_invoice_number"),
    )
    op.create_index("ix_payments_client_id", "payments", ["client_id"])
    op.create_index("ix_payments_consultation_id", "payments", ["consultation_id"])
    op.create_index("ix_payments_application_id", "payments", ["application_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_gateway_reference", "payments", ["gateway_reference"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("payments")
    op.drop_table("applications")
    op.drop_index("uq_consultations_active_slot", table_name="consultations")
    op.drop_table("consultations")
    op.drop_table("clients")
