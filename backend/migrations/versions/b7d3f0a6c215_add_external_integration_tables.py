"""add_external_integration_tables

Revision ID: b7d3f0a6c215
Revises: a1c4e2f7b9d0
Create Date: 2026-10-17 09:40:05.631774

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'b7d3f0a6c215'
down_revision: Union[str, Sequence[str], None] = 'a1c4e2f7b9d0'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    entity_type_enum = sa.Enum('list', 'list_label', 'task', 'label', name='mappingentitytype')
    # Created by the previous revision or the first table that uses it.
    due_precision_enum = postgresql.ENUM('day', 'week', 'month', 'year', name='duedateprecision', create_type=False)
    existing_entity_type_enum = postgresql.ENUM('list', 'list_label', 'task', 'label', name='mappingentitytype', create_type=False)
    sync_status_enum = sa.Enum('idle', 'syncing', 'error', name='syncstatus')
    conflict_status_enum = sa.Enum('pending', 'resolved', name='conflictstatus')
    conflict_resolution_enum = sa.Enum('local', 'remote', name='conflictresolution')

    # external_integrations
    op.create_table(
        'external_integrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('access_token_iv', sa.String(), nullable=False),
        sa.Column('access_token_tag', sa.String(), nullable=False),
        sa.Column('access_token_key_id', sa.String(), nullable=False, server_default='default'),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_iv', sa.String(), nullable=True),
        sa.Column('refresh_token_tag', sa.String(), nullable=True),
        sa.Column('refresh_token_key_id', sa.String(), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_external_integrations_user_provider')
    )

    # external_entity_map
    op.create_table(
        'external_entity_map',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('entity_type', entity_type_enum, nullable=False),
        sa.Column('local_id', sa.Integer(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('external_parent_id', sa.String(), nullable=True),
        sa.Column('local_version', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remote_version', sa.String(), nullable=True),
        sa.Column('due_precision', due_precision_enum, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', 'entity_type', 'external_id', name='uq_entity_map_external')
    )
    op.create_index(
        'idx_entity_map_local_lookup', 'external_entity_map',
        ['user_id', 'provider', 'entity_type', 'local_id'], unique=True
    )

    # external_sync_state
    op.create_table(
        'external_sync_state',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('status', sync_status_enum, nullable=False, server_default='idle'),
        sa.Column('sync_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_external_sync_state_user_provider')
    )

    # external_sync_conflicts
    op.create_table(
        'external_sync_conflicts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('entity_type', existing_entity_type_enum, nullable=False),
        sa.Column('local_id', sa.Integer(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('conflict_type', sa.String(), nullable=False, server_default='both_modified'),
        sa.Column('local_payload', sa.JSON(), nullable=True),
        sa.Column('external_payload', sa.JSON(), nullable=True),
        sa.Column('status', conflict_status_enum, nullable=False, server_default='pending'),
        sa.Column('resolution', conflict_resolution_enum, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True)
    )
    op.create_index(
        'idx_sync_conflicts_user_status', 'external_sync_conflicts', ['user_id', 'provider', 'status']
    )


def downgrade() -> None:
    op.drop_index('idx_sync_conflicts_user_status', table_name='external_sync_conflicts')
    op.drop_table('external_sync_conflicts')
    op.drop_table('external_sync_state')
    op.drop_index('idx_entity_map_local_lookup', table_name='external_entity_map')
    op.drop_table('external_entity_map')
    op.drop_table('external_integrations')
    for name in ('conflictresolution', 'conflictstatus', 'syncstatus', 'mappingentitytype'):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
