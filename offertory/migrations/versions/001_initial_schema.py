"""Initial schema: tenants, campaigns, monetary records, receipts, entitlements, audit.

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-06-23 10:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.current_timestamp(),
        ),
    ]


def upgrade() -> None:
    # Create tenants table
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, comment="Display name"),
        sa.Column(
            "receipt_prefix",
            sa.String(length=8),
            nullable=False,
            comment="Receipt number code derived from name; may repeat across tenants",
        ),
        sa.Column("total_contributions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "completed_contribution_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("total_refunded", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("stats_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_tenant_name", "name"),
    )

    # Create campaigns table
    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False, comment="Owning tenant"),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("target_amount", sa.BigInteger(), nullable=False, comment="Target in minor units"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="NGN"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("close_on_target", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("raised_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("contribution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_donor_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_contribution", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("largest_contribution", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("analytics_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_campaigns_tenant_id", "tenant_id"),
        sa.Index("idx_campaign_tenant_status", "tenant_id", "status"),
    )

    op.create_table(
        "campaign_milestones",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False, comment="Threshold, minor units"),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("reached_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_campaign_milestones_campaign_id", "campaign_id"),
    )

    op.create_table(
        "campaign_donors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("donor_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "donor_id", name="uq_campaign_donor"),
    )

    # Create monetary_records table (contributions, spend requests, ledger entries, refunds)
    op.create_table(
        "monetary_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False, comment="Owning tenant"),
        sa.Column(
            "kind",
            sa.String(length=20),
            nullable=False,
            comment="contribution/spend_request/ledger_entry/refund",
        ),
        sa.Column(
            "amount", sa.BigInteger(), nullable=False, comment="Amount in minor units, immutable"
        ),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="NGN"),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=True),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default="pending",
            comment="Lifecycle state; see state machine",
        ),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default="1",
            comment="Bumped on every applied transition",
        ),
        sa.Column(
            "campaign_id",
            sa.Integer(),
            nullable=True,
            comment="Campaign this record counts towards",
        ),
        sa.Column("donor_id", sa.Integer(), nullable=True, comment="Member ID"),
        sa.Column("donor_name", sa.String(length=100), nullable=True),
        sa.Column("donor_email", sa.String(length=200), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "actor_id",
            sa.Integer(),
            nullable=True,
            comment="Who triggered the latest terminal transition",
        ),
        # Contribution: gateway data
        sa.Column(
            "payment_reference",
            sa.String(length=64),
            nullable=True,
            comment="Our reference sent to the gateway",
        ),
        sa.Column(
            "external_reference",
            sa.String(length=64),
            nullable=True,
            comment="Gateway transaction reference",
        ),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("payment_method", sa.String(length=30), nullable=True),
        sa.Column("checkout_url", sa.String(length=500), nullable=True),
        sa.Column("paid_amount", sa.BigInteger(), nullable=True),
        sa.Column("paid_on", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_hash", sa.String(length=256), nullable=True),
        sa.Column(
            "receipt_number",
            sa.String(length=32),
            nullable=True,
            comment="Assigned once on completion, unique per tenant",
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("processing_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        # Spend request / ledger entry: approval
        sa.Column(
            "approved_amount",
            sa.BigInteger(),
            nullable=True,
            comment="May differ from requested amount",
        ),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        # Ledger entry: verification and reconciliation
        sa.Column("verification_status", sa.String(length=20), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verified_by", sa.Integer(), nullable=True),
        sa.Column("verification_method", sa.String(length=20), nullable=True),
        sa.Column("verification_notes", sa.Text(), nullable=True),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_by", sa.Integer(), nullable=True),
        sa.Column("reconciliation_notes", sa.Text(), nullable=True),
        sa.Column("bank_statement_reference", sa.String(length=100), nullable=True),
        # Refund
        sa.Column(
            "refund_of_id",
            sa.Integer(),
            nullable=True,
            comment="Contribution compensated by this refund",
        ),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.ForeignKeyConstraint(["campaign_id"], ["campaigns.id"]),
        sa.ForeignKeyConstraint(["refund_of_id"], ["monetary_records.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference"),
        sa.UniqueConstraint("external_reference"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_record_idempotency"),
        sa.UniqueConstraint("tenant_id", "receipt_number", name="uq_record_receipt"),
        sa.Index("ix_monetary_records_tenant_id", "tenant_id"),
        sa.Index("ix_monetary_records_campaign_id", "campaign_id"),
        sa.Index("ix_monetary_records_refund_of_id", "refund_of_id"),
        sa.Index("idx_record_tenant_kind_status", "tenant_id", "kind", "status"),
        sa.Index("idx_record_tenant_created", "tenant_id", "created_at"),
        sa.Index("idx_record_verification", "tenant_id", "verification_status"),
    )

    op.create_table(
        "receipt_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "year", name="uq_receipt_sequence"),
    )

    # Create tenant_entitlements table (one active row per tenant)
    op.create_table(
        "tenant_entitlements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False, comment="Subscribing tenant"),
        sa.Column("plan_name", sa.String(length=50), nullable=False),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default="active",
            comment="active/expired/cancelled/suspended",
        ),
        sa.Column("billing_cycle", sa.String(length=10), nullable=False, server_default="monthly"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("cancellation_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("cancellation_requested_by", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("ix_tenant_entitlements_tenant_id", "tenant_id"),
        sa.Index("idx_entitlement_status_end", "status", "period_end"),
    )
    op.create_index(
        "uq_entitlement_one_active",
        "tenant_entitlements",
        ["tenant_id"],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "entitlement_usage",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entitlement_id", sa.Integer(), nullable=False),
        sa.Column("resource_kind", sa.String(length=20), nullable=False),
        sa.Column("current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_limit", sa.Integer(), nullable=False, comment="Ceiling; 0 means unlimited"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["entitlement_id"], ["tenant_entitlements.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entitlement_id", "resource_kind", name="uq_usage_kind"),
        sa.Index("ix_entitlement_usage_entitlement_id", "entitlement_id"),
    )

    # Create audit_logs table
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.Index("idx_audit_entity", "entity_type", "entity_id"),
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("entitlement_usage")
    op.drop_index("uq_entitlement_one_active", table_name="tenant_entitlements")
    op.drop_table("tenant_entitlements")
    op.drop_table("receipt_sequences")
    op.drop_table("monetary_records")
    op.drop_table("campaign_donors")
    op.drop_table("campaign_milestones")
    op.drop_table("campaigns")
    op.drop_table("tenants")
