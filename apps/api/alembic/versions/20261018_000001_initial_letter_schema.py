"""initial letter lifecycle schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="subscriber"),
        sa.Column("is_super_user", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "letters",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("letter_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="draft"),
        sa.Column("intake_data", sa.JSON(), nullable=False),
        sa.Column("ai_draft_content", sa.Text(), nullable=True),
        sa.Column("final_content", sa.Text(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("is_first_document", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("generation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("review_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["reviewer_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_letters_user_id", "letters", ["user_id"], unique=False)
    op.create_index("ix_letters_status", "letters", ["status"], unique=False)
    op.create_index("ix_letters_reviewer_id", "letters", ["reviewer_id"], unique=False)
    op.create_index("ix_letters_submitted_at", "letters", ["submitted_at"], unique=False)

    op.create_table(
        "letter_audit_trail",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("letter_id", sa.String(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("old_status", sa.String(), nullable=True),
        sa.Column("new_status", sa.String(), nullable=True),
        sa.Column("is_transition", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["letter_id"], ["letters.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_letter_audit_trail_letter_id", "letter_audit_trail", ["letter_id"], unique=False)
    op.create_index("ix_letter_audit_trail_created_at", "letter_audit_trail", ["created_at"], unique=False)

    op.create_table(
        "allowance_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("plan_tier", sa.String(), nullable=False, server_default="free_trial"),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("free_trial_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_reset_period", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits_remaining >= 0", name="ck_allowance_accounts_credits_non_negative"),
        sa.ForeignKeyConstraint(["subscriber_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_allowance_accounts_subscriber_id", "allowance_accounts", ["subscriber_id"], unique=True)
    op.create_index(
        "ix_allowance_accounts_subscription_status",
        "allowance_accounts",
        ["subscription_status"],
        unique=False,
    )

    op.create_table(
        "allowance_reservations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("letter_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="held"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("balance_period", sa.String(), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["subscriber_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["letter_id"], ["letters.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_allowance_reservations_subscriber_id", "allowance_reservations", ["subscriber_id"], unique=False)
    op.create_index("ix_allowance_reservations_letter_id", "allowance_reservations", ["letter_id"], unique=True)
    op.create_index("ix_allowance_reservations_status", "allowance_reservations", ["status"], unique=False)

    op.create_table(
        "allowance_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("subscriber_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("delta_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("reservation_id", sa.String(), nullable=True),
        sa.Column("letter_id", sa.String(), nullable=True),
        sa.Column("period_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["subscriber_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["reservation_id"], ["allowance_reservations.id"]),
        sa.ForeignKeyConstraint(["letter_id"], ["letters.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_allowance_ledger_subscriber_id", "allowance_ledger", ["subscriber_id"], unique=False)
    op.create_index("ix_allowance_ledger_reservation_id", "allowance_ledger", ["reservation_id"], unique=False)
    op.create_index("ix_allowance_ledger_letter_id", "allowance_ledger", ["letter_id"], unique=False)
    op.create_index("ix_allowance_ledger_period_key", "allowance_ledger", ["period_key"], unique=False)
    op.create_index("ix_allowance_ledger_created_at", "allowance_ledger", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_allowance_ledger_created_at", table_name="allowance_ledger")
    op.drop_index("ix_allowance_ledger_period_key", table_name="allowance_ledger")
    op.drop_index("ix_allowance_ledger_letter_id", table_name="allowance_ledger")
    op.drop_index("ix_allowance_ledger_reservation_id", table_name="allowance_ledger")
    op.drop_index("ix_allowance_ledger_subscriber_id", table_name="allowance_ledger")
    op.drop_table("allowance_ledger")

    op.drop_index("ix_allowance_reservations_status", table_name="allowance_reservations")
    op.drop_index("ix_allowance_reservations_letter_id", table_name="allowance_reservations")
    op.drop_index("ix_allowance_reservations_subscriber_id", table_name="allowance_reservations")
    op.drop_table("allowance_reservations")

    op.drop_index("ix_allowance_accounts_subscription_status", table_name="allowance_accounts")
    op.drop_index("ix_allowance_accounts_subscriber_id", table_name="allowance_accounts")
    op.drop_table("allowance_accounts")

    op.drop_index("ix_letter_audit_trail_created_at", table_name="letter_audit_trail")
    op.drop_index("ix_letter_audit_trail_letter_id", table_name="letter_audit_trail")
    op.drop_table("letter_audit_trail")

    op.drop_index("ix_letters_submitted_at", table_name="letters")
    op.drop_index("ix_letters_reviewer_id", table_name="letters")
    op.drop_index("ix_letters_status", table_name="letters")
    op.drop_index("ix_letters_user_id", table_name="letters")
    op.drop_table("letters")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
