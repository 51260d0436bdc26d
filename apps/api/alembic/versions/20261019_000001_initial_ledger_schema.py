"""create tenant credit ledger schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SEED_CREDIT_COSTS = [
    ("order.create", "Create order", 5, "orders"),
    ("order.update", "Update order", 1, "orders"),
    ("product.create", "Create product", 2, "catalog"),
    ("menu.create", "Create menu", 10, "menus"),
    ("invoice.send", "Send invoice", 2, "billing"),
    ("report.export", "Export report", 3, "exports"),
]


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("is_free_tier", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_tenants_slug"), "tenants", ["slug"], unique=True)

    op.create_table(
        "tenant_credit_accounts",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_credits_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("purchased_credits_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_free_tier", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_free_grant_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_free_grant_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credits_used_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_week", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_daily_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_weekly_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_monthly_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("warning_25_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("warning_10_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("warning_5_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("warning_0_sent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actions_this_minute", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_tenant_credit_accounts_balance_non_negative"),
        sa.CheckConstraint("free_credits_balance >= 0", name="ck_tenant_credit_accounts_free_non_negative"),
        sa.CheckConstraint(
            "purchased_credits_balance >= 0",
            name="ck_tenant_credit_accounts_purchased_non_negative",
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("tenant_id"),
    )
    op.create_index(
        "ix_tenant_credit_accounts_next_free_grant_at",
        "tenant_credit_accounts",
        ["next_free_grant_at"],
        unique=False,
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("action_type", sa.String(), nullable=True),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("reference_type", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "reference_id",
            "transaction_type",
            name="uq_credit_transactions_tenant_reference_type",
        ),
    )
    op.create_index("ix_credit_transactions_tenant_id", "credit_transactions", ["tenant_id"], unique=False)
    op.create_index(
        "ix_credit_transactions_transaction_type",
        "credit_transactions",
        ["transaction_type"],
        unique=False,
    )
    op.create_index("ix_credit_transactions_action_type", "credit_transactions", ["action_type"], unique=False)
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"], unique=False)

    credit_costs = op.create_table(
        "credit_costs",
        sa.Column("action_key", sa.String(), nullable=False),
        sa.Column("action_name", sa.String(), nullable=True),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("action_key"),
    )
    op.create_index("ix_credit_costs_category", "credit_costs", ["category"], unique=False)
    op.bulk_insert(
        credit_costs,
        [
            {"action_key": key, "action_name": name, "credits": credits, "category": category, "is_active": True}
            for key, name, credits, category in SEED_CREDIT_COSTS
        ],
    )

    op.create_table(
        "credit_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("grant_type", sa.String(), nullable=False),
        sa.Column("promo_code", sa.String(), nullable=True),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_grants_tenant_id", "credit_grants", ["tenant_id"], unique=False)
    op.create_index("ix_credit_grants_grant_type", "credit_grants", ["grant_type"], unique=False)

    op.create_table(
        "credit_analytics_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("credits_at_event", sa.Integer(), nullable=True),
        sa.Column("action_attempted", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_credit_analytics_events_tenant_id", "credit_analytics_events", ["tenant_id"], unique=False)
    op.create_index(
        "ix_credit_analytics_events_event_type",
        "credit_analytics_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_credit_analytics_events_created_at",
        "credit_analytics_events",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "auto_topup_configs",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trigger_threshold", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("topup_amount", sa.Integer(), nullable=False, server_default="500"),
        sa.Column("max_per_month", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("topups_this_month", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("topups_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method_id", sa.String(), nullable=True),
        sa.Column("last_topup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "referral_codes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("referrer_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referee_bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("uses_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_referral_codes_code"), "referral_codes", ["code"], unique=True)
    op.create_index("ix_referral_codes_tenant_id", "referral_codes", ["tenant_id"], unique=False)

    op.create_table(
        "referral_redemptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("referral_code_id", sa.String(), nullable=False),
        sa.Column("referrer_tenant_id", sa.String(), nullable=False),
        sa.Column("referee_tenant_id", sa.String(), nullable=False),
        sa.Column("referrer_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referee_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["referral_code_id"], ["referral_codes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["referrer_tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["referee_tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "referral_code_id",
            "referee_tenant_id",
            name="uq_referral_redemptions_code_referee",
        ),
    )
    op.create_index(
        "ix_referral_redemptions_referral_code_id",
        "referral_redemptions",
        ["referral_code_id"],
        unique=False,
    )
    op.create_index(
        "ix_referral_redemptions_referrer_tenant_id",
        "referral_redemptions",
        ["referrer_tenant_id"],
        unique=False,
    )
    op.create_index(
        "ix_referral_redemptions_referee_tenant_id",
        "referral_redemptions",
        ["referee_tenant_id"],
        unique=False,
    )

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("credits_amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("uses_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_promo_codes_code"), "promo_codes", ["code"], unique=True)

    op.create_table(
        "promo_redemptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("promo_code_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("promo_code_id", "tenant_id", name="uq_promo_redemptions_code_tenant"),
    )
    op.create_index("ix_promo_redemptions_promo_code_id", "promo_redemptions", ["promo_code_id"], unique=False)
    op.create_index("ix_promo_redemptions_tenant_id", "promo_redemptions", ["tenant_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_promo_redemptions_tenant_id", table_name="promo_redemptions")
    op.drop_index("ix_promo_redemptions_promo_code_id", table_name="promo_redemptions")
    op.drop_table("promo_redemptions")

    op.drop_index(op.f("ix_promo_codes_code"), table_name="promo_codes")
    op.drop_table("promo_codes")

    op.drop_index("ix_referral_redemptions_referee_tenant_id", table_name="referral_redemptions")
    op.drop_index("ix_referral_redemptions_referrer_tenant_id", table_name="referral_redemptions")
    op.drop_index("ix_referral_redemptions_referral_code_id", table_name="referral_redemptions")
    op.drop_table("referral_redemptions")

    op.drop_index("ix_referral_codes_tenant_id", table_name="referral_codes")
    op.drop_index(op.f("ix_referral_codes_code"), table_name="referral_codes")
    op.drop_table("referral_codes")

    op.drop_table("auto_topup_configs")

    op.drop_index("ix_credit_analytics_events_created_at", table_name="credit_analytics_events")
    op.drop_index("ix_credit_analytics_events_event_type", table_name="credit_analytics_events")
    op.drop_index("ix_credit_analytics_events_tenant_id", table_name="credit_analytics_events")
    op.drop_table("credit_analytics_events")

    op.drop_index("ix_credit_grants_grant_type", table_name="credit_grants")
    op.drop_index("ix_credit_grants_tenant_id", table_name="credit_grants")
    op.drop_table("credit_grants")

    op.drop_index("ix_credit_costs_category", table_name="credit_costs")
    op.drop_table("credit_costs")

    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_action_type", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_transaction_type", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_tenant_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_tenant_credit_accounts_next_free_grant_at", table_name="tenant_credit_accounts")
    op.drop_table("tenant_credit_accounts")

    op.drop_index(op.f("ix_tenants_slug"), table_name="tenants")
    op.drop_table("tenants")
