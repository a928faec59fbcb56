from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "execution_records",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("kind", sa.String(16), index=True),
        sa.Column("vault_address", sa.String(64), index=True),
        sa.Column("nonce", sa.BigInteger, nullable=True, index=True),
        sa.Column("sequence", sa.Integer, default=0),
        sa.Column("status", sa.String(16), index=True),
        sa.Column("input_token", sa.String(64)),
        sa.Column("output_token", sa.String(64)),
        sa.Column("planned_amount", sa.String(40)),
        sa.Column("trigger_price", sa.String(40)),
        sa.Column("request_id", sa.String(128)),
        sa.Column("swap_signature", sa.String(100), index=True),
        sa.Column("input_amount", sa.String(40)),
        sa.Column("output_amount", sa.String(40)),
        sa.Column("settle_signature", sa.String(100)),
        sa.Column("error_kind", sa.String(40)),
        sa.Column("error", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )


def downgrade():
    op.drop_table("execution_records")
