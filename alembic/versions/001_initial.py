"""Initial lockout and session monitoring tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Admin users
    op.create_table(
        'admin_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(64), nullable=False),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('totp_secret', sa.String(64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username')
    )

    # Authentication event log
    op.create_table(
        'account_security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('lockout_until', sa.DateTime(), nullable=True),
        sa.Column('lockout_reason', sa.String(255), nullable=True),
        sa.Column('lockout_type', sa.String(20), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_account_security_events_user_id', 'account_security_events', ['user_id'])
    op.create_index('ix_account_security_events_event_type', 'account_security_events', ['event_type'])
    op.create_index('ix_account_security_events_ip_address', 'account_security_events', ['ip_address'])
    op.create_index('ix_account_security_events_created_at', 'account_security_events', ['created_at'])

    # Incidents
    op.create_table(
        'security_incidents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('incident_type', sa.String(50), nullable=True),
        sa.Column('severity', sa.String(10), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('evidence', sa.JSON(), nullable=True),
        sa.Column('automated_response', sa.String(255), nullable=True),
        sa.Column('admin_notified', sa.Boolean(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(64), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_security_incidents_incident_type', 'security_incidents', ['incident_type'])
    op.create_index('ix_security_incidents_status', 'security_incidents', ['status'])
    op.create_index('ix_security_incidents_user_id', 'security_incidents', ['user_id'])
    op.create_index('ix_security_incidents_ip_address', 'security_incidents', ['ip_address'])
    op.create_index('ix_security_incidents_created_at', 'security_incidents', ['created_at'])

    # Alerts
    op.create_table(
        'security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=True),
        sa.Column('severity', sa.String(10), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_security_events_event_type', 'security_events', ['event_type'])
    op.create_index('ix_security_events_created_at', 'security_events', ['created_at'])

    # Background job audit log
    op.create_table(
        'system_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=True),
        sa.Column('event_category', sa.String(50), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_system_events_event_type', 'system_events', ['event_type'])
    op.create_index('ix_system_events_created_at', 'system_events', ['created_at'])

    # Blocked IPs
    op.create_table(
        'blocked_ips',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=True),
        sa.Column('blocked_at', sa.DateTime(), nullable=True),
        sa.Column('blocked_until', sa.DateTime(), nullable=True),
        sa.Column('is_permanent', sa.Boolean(), nullable=True),
        sa.Column('unblocked_at', sa.DateTime(), nullable=True),
        sa.Column('unblocked_by', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_blocked_ips_ip_address', 'blocked_ips', ['ip_address'])

    # Verification unlock tokens
    op.create_table(
        'unlock_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('jti', sa.String(64), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_unlock_tokens_jti', 'unlock_tokens', ['jti'], unique=True)
    op.create_index('ix_unlock_tokens_user_id', 'unlock_tokens', ['user_id'])

    # Sessions
    op.create_table(
        'user_sessions',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('device_fingerprint', sa.String(128), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('location', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('last_activity', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('revoke_reason', sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('ix_user_sessions_ip_address', 'user_sessions', ['ip_address'])
    op.create_index('ix_user_sessions_created_at', 'user_sessions', ['created_at'])
    op.create_index('ix_user_sessions_last_activity', 'user_sessions', ['last_activity'])
    op.create_index('ix_user_sessions_expires_at', 'user_sessions', ['expires_at'])
    op.create_index('ix_user_sessions_is_active', 'user_sessions', ['is_active'])

    # Roles
    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('role', sa.String(30), nullable=True),
        sa.Column('is_primary', sa.Boolean(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])


def downgrade() -> None:
    op.drop_table('user_roles')
    op.drop_table('user_sessions')
    op.drop_table('unlock_tokens')
    op.drop_table('blocked_ips')
    op.drop_table('system_events')
    op.drop_table('security_events')
    op.drop_table('security_incidents')
    op.drop_table('account_security_events')
    op.drop_table('admin_users')
