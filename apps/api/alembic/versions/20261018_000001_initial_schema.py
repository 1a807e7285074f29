"""create users, credit profiles, adventures and purchases

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
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_purchased", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_user_profiles_credits_non_negative"),
        sa.CheckConstraint("total_purchased >= 0", name="ck_user_profiles_total_purchased_non_negative"),
        sa.ForeignKeyConstraint(["id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "adventures",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("frame", sa.String(), nullable=False),
        sa.Column("focus", sa.String(), nullable=False),
        sa.Column("state", sa.String(), server_default="draft", nullable=False),
        sa.Column("config_json", sa.JSON(), nullable=True),
        sa.Column("movements_json", sa.JSON(), nullable=True),
        sa.Column("scaffold_regenerations_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("expansion_regenerations_used", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("state IN ('draft', 'ready', 'archived')", name="ck_adventures_state"),
        sa.CheckConstraint(
            "scaffold_regenerations_used >= 0",
            name="ck_adventures_scaffold_regenerations_non_negative",
        ),
        sa.CheckConstraint(
            "expansion_regenerations_used >= 0",
            name="ck_adventures_expansion_regenerations_non_negative",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_adventures_user_id", "adventures", ["user_id"], unique=False)
    op.create_index("ix_adventures_state", "adventures", ["state"], unique=False)
    op.create_index("ix_adventures_created_at", "adventures", ["created_at"], unique=False)

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("payment_reference", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'succeeded', 'failed')", name="ck_purchases_status"),
        sa.CheckConstraint("credits > 0", name="ck_purchases_credits_positive"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference"),
    )
    op.create_index("ix_purchases_user_id", "purchases", ["user_id"], unique=False)
    op.create_index("ix_purchases_created_at", "purchases", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_purchases_created_at", table_name="purchases")
    op.drop_index("ix_purchases_user_id", table_name="purchases")
    op.drop_table("purchases")

    op.drop_index("ix_adventures_created_at", table_name="adventures")
    op.drop_index("ix_adventures_state", table_name="adventures")
    op.drop_index("ix_adventures_user_id", table_name="adventures")
    op.drop_table("adventures")

    op.drop_table("user_profiles")

    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
