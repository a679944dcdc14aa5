"""init

Revision ID: 5d1f0c2a9e41
Revises:
Create Date: 2026-01-12 10:42:17.381904

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5d1f0c2a9e41"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # single row, id is always 1
    op.create_table(
        "instance_config",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("domain", sa.String(512), nullable=False),
        sa.Column("homeserver", sa.String(512), nullable=False),
        sa.Column("signing_key_id", sa.String(128), nullable=False),
        sa.Column("signing_pubkey", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("status_reason", sa.String(512), nullable=True),
        sa.Column(
            "last_identity_check_at", sa.DateTime(timezone=True), nullable=True
        ),
    )

    op.create_table(
        "accounts",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("handle", sa.String(512), nullable=False),
        sa.Column("wallet_name", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_accounts_handle", "accounts", ["handle"], unique=True)

    op.create_table(
        "aliases",
        sa.Column("guid", sa.String(512), primary_key=True),
        sa.Column("account_guid", sa.String(512), nullable=False),
        sa.Column("full_acct", sa.String(512), nullable=False),
        sa.Column("alias_label", sa.String(512), nullable=False),
        sa.Column("mode", sa.String(32), nullable=False),
        sa.Column("static_address", sa.String(512), nullable=True),
        sa.Column("subaddress_index", sa.Integer, nullable=True),
        sa.Column("cached_address", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_aliases_full_acct", "aliases", ["full_acct"], unique=True)
    op.create_index("idx_aliases_account_guid", "aliases", ["account_guid"])


def downgrade() -> None:
    op.drop_table("aliases")
    op.drop_table("accounts")
    op.drop_table("instance_config")
