"""Create analytics tables (projects, events, segments, segment_users)

Revision ID: 000_create_analytics_tables
Revises:
Create Date: 2026-10-19

Note: segment_users is keyed by (segment_id, identity) so a user id and an
anonymous id with the same text never collide.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision = '000_create_analytics_tables'
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(conn, table: str) -> bool:
    result = conn.execute(text(
        f"SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = '{table}')"
    ))
    return bool(result.scalar())


def upgrade():
    """Create analytics tables."""
    conn = op.get_bind()

    # Projects
    if not _table_exists(conn, 'projects'):
        op.create_table(
            'projects',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True)),
        )

    # Events (append-only; written by ingestion)
    if not _table_exists(conn, 'events'):
        op.create_table(
            'events',
            sa.Column('id', sa.String(255), primary_key=True),
            sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
            sa.Column('event_name', sa.String(255), nullable=False),
            sa.Column('properties', sa.JSON()),
            sa.Column('timestamp', sa.BigInteger()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column('user_id', sa.String(255)),
            sa.Column('anonymous_id', sa.String(255), nullable=False),
            sa.Column('session_id', sa.String(255)),
        )
        op.create_index('ix_events_project_created_at', 'events', ['project_id', 'created_at'])
        op.create_index('ix_events_project_event_name', 'events', ['project_id', 'event_name'])
        op.create_index('ix_events_user_id', 'events', ['user_id'])
        op.create_index('ix_events_anonymous_id', 'events', ['anonymous_id'])

    # Segments
    if not _table_exists(conn, 'segments'):
        op.create_table(
            'segments',
            sa.Column('id', UUID(as_uuid=True), primary_key=True),
            sa.Column('project_id', UUID(as_uuid=True), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('description', sa.Text()),
            sa.Column('segment_type', sa.String(20), nullable=False, server_default='dynamic'),
            sa.Column('criteria', sa.JSON(), nullable=False),
            sa.Column('cached_size', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_calculated_at', sa.DateTime(timezone=True)),
            sa.Column('is_approximate', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True)),
        )
        op.create_index('ix_segments_project_id', 'segments', ['project_id'])
        op.create_index('ix_segments_segment_type', 'segments', ['segment_type'])

    # Materialized membership
    if not _table_exists(conn, 'segment_users'):
        op.create_table(
            'segment_users',
            sa.Column('segment_id', UUID(as_uuid=True), sa.ForeignKey('segments.id', ondelete='CASCADE'), nullable=False),
            sa.Column('identity', sa.String(300), nullable=False),
            sa.Column('user_id', sa.String(255), nullable=False),
            sa.Column('anonymous_id', sa.String(255)),
            sa.Column('added_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('segment_id', 'identity'),
        )
        op.create_index('ix_segment_users_segment_added', 'segment_users', ['segment_id', 'added_at'])
        op.create_index('ix_segment_users_user_id', 'segment_users', ['user_id'])


def downgrade():
    """Drop analytics tables."""
    conn = op.get_bind()
    tables = ['segment_users', 'segments', 'events', 'projects']
    for table in tables:
        if _table_exists(conn, table):
            op.drop_table(table)
