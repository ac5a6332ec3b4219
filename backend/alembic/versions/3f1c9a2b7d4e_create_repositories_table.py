"""create repositories table

Revision ID: 3f1c9a2b7d4e
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c9a2b7d4e'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('repositories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('full_name', sa.String(length=512), nullable=False),
        sa.Column('path', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('display_name', sa.String(length=512), nullable=False, server_default=''),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('url', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('stars', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('language', sa.String(length=128), nullable=False, server_default=''),
        sa.Column('icon', sa.String(length=1024), nullable=False, server_default=''),
        sa.Column('readme_content', sa.Text(), nullable=False, server_default=''),
        # NULL means absent: no accepted manifest, no pending proposal, tools never scanned
        sa.Column('manifest', sa.JSON(), nullable=True),
        sa.Column('proposed_manifest', sa.JSON(), nullable=True),
        sa.Column('tool_definitions', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('repositories', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_repositories_id'), ['id'], unique=False)
        batch_op.create_index(batch_op.f('ix_repositories_full_name'), ['full_name'], unique=True)
        batch_op.create_index(batch_op.f('ix_repositories_stars'), ['stars'], unique=False)


def downgrade() -> None:
    with op.batch_alter_table('repositories', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_repositories_stars'))
        batch_op.drop_index(batch_op.f('ix_repositories_full_name'))
        batch_op.drop_index(batch_op.f('ix_repositories_id'))
    op.drop_table('repositories')
