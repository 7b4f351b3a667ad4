"""Two-factor authentication (TOTP + backup codes)

Revision ID: 20261001_01
Revises: 20261001_00
Create Date: 2026-10-01

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261001_01"
down_revision = "20261001_00"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("users", sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.false()))
    op.add_column("users", sa.Column("two_factor_secret", sa.Text(), nullable=True))
    op.add_column("users", sa.Column("backup_codes", sa.Text(), nullable=True))

    op.add_column("app_sessions", sa.Column("two_factor_verified_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("app_sessions", sa.Column("pending_two_factor_secret", sa.Text(), nullable=True))


def downgrade() -> None:
    op.drop_column("app_sessions", "pending_two_factor_secret")
    op.drop_column("app_sessions", "two_factor_verified_at")

    op.drop_column("users", "backup_codes")
    op.drop_column("users", "two_factor_secret")
    op.drop_column("users", "two_factor_enabled")
