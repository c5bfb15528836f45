"""create pastes table

Revision ID: 001_create_pastes
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_create_pastes'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'pastes',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('ciphertext', sa.LargeBinary(), nullable=False),
        sa.Column('iv', sa.LargeBinary(), nullable=False),
        sa.Column('expire_ts', sa.BigInteger(), nullable=False),
        sa.Column('views_allowed', sa.Integer(), nullable=True),
        sa.Column('views_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('single_view', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('mime', sa.String(length=255), nullable=True),
        sa.Column('delete_token_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('views_allowed IS NULL OR views_allowed >= 1', name='ck_pastes_views_allowed_min_1'),
        sa.CheckConstraint('views_used >= 0', name='ck_pastes_views_used_non_negative'),
    )
    # The reaper sweeps by expiry.
    op.create_index(op.f('ix_pastes_expire_ts'), 'pastes', ['expire_ts'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_pastes_expire_ts'), table_name='pastes')
    op.drop_table('pastes')
