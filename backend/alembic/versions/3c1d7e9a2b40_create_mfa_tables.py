"""create_mfa_tables

Revision ID: 3c1d7e9a2b40
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = '3c1d7e9a2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = postgresql.ENUM('EMPLOYEE', 'MANAGER', 'HR', 'ADMIN', 'IT', name='user_role', create_type=False)
mfa_status = postgresql.ENUM('NOT_ENROLLED', 'PENDING_SETUP', 'ACTIVE', name='mfa_status', create_type=False)
mfa_method = postgresql.ENUM('AUTHENTICATOR', 'EMAIL_OTP', 'NONE', name='mfa_method', create_type=False)
mfa_audit_action = postgresql.ENUM(
    'SETUP_STARTED', 'SETUP_COMPLETED', 'VERIFY_SUCCESS', 'VERIFY_FAIL', 'RATE_LIMITED',
    'BACKUP_CODE_USED', 'EMAIL_OTP_SENT', 'RESET', 'DEVICE_TRUSTED', 'DEVICE_REVOKED',
    'POLICY_UPDATED',
    name='mfa_audit_action',
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in (user_role, mfa_status, mfa_method, mfa_audit_action):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_mfa',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', mfa_status, nullable=False),
        sa.Column('method', mfa_method, nullable=False),
        sa.Column('secret', sa.String(length=512), nullable=True),
        sa.Column('last_totp_step', sa.BigInteger(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )

    op.create_table(
        'mfa_backup_codes',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('code_hash', sa.String(length=255), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mfa_backup_codes_user_id', 'mfa_backup_codes', ['user_id'])

    op.create_table(
        'mfa_setup_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('method', mfa_method, nullable=False),
        sa.Column('candidate_secret', sa.String(length=512), nullable=True),
        sa.Column('otp_hash', sa.String(length=64), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mfa_setup_sessions_user_id', 'mfa_setup_sessions', ['user_id'])
    op.create_index('ix_mfa_setup_sessions_token_hash', 'mfa_setup_sessions', ['token_hash'], unique=True)
    op.create_index('ix_mfa_setup_sessions_expires_at', 'mfa_setup_sessions', ['expires_at'])

    op.create_table(
        'mfa_email_otps',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('code_hash', sa.String(length=64), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mfa_email_otps_user_id', 'mfa_email_otps', ['user_id'])

    op.create_table(
        'mfa_failed_attempts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('attempted_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_mfa_failed_attempts_user_attempted', 'mfa_failed_attempts', ['user_id', 'attempted_at']
    )

    op.create_table(
        'mfa_trusted_devices',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('device_fingerprint', sa.String(length=255), nullable=False),
        sa.Column('device_name', sa.String(length=255), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('trusted_until', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'device_fingerprint', name='uq_trusted_device_user_fingerprint'),
    )
    op.create_index('ix_mfa_trusted_devices_trusted_until', 'mfa_trusted_devices', ['trusted_until'])

    op.create_table(
        'mfa_policy',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('enforced', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('allowed_methods', sa.JSON(), nullable=False),
        sa.Column('required_roles', sa.JSON(), nullable=False),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('remember_device_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('effective_since', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('updated_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(['updated_by'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('grace_period_days >= 0', name='ck_mfa_policy_grace_non_negative'),
        sa.CheckConstraint('remember_device_days >= 0', name='ck_mfa_policy_remember_non_negative'),
    )

    op.create_table(
        'mfa_audit_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('action', mfa_audit_action, nullable=False),
        sa.Column('method', sa.String(length=32), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_mfa_audit_log_created_at', 'mfa_audit_log', ['created_at'])
    op.create_index('ix_mfa_audit_log_user_action', 'mfa_audit_log', ['user_id', 'action'])


def downgrade() -> None:
    op.drop_index('ix_mfa_audit_log_user_action', table_name='mfa_audit_log')
    op.drop_index('ix_mfa_audit_log_created_at', table_name='mfa_audit_log')
    op.drop_table('mfa_audit_log')
    op.drop_table('mfa_policy')
    op.drop_index('ix_mfa_trusted_devices_trusted_until', table_name='mfa_trusted_devices')
    op.drop_table('mfa_trusted_devices')
    op.drop_index('ix_mfa_failed_attempts_user_attempted', table_name='mfa_failed_attempts')
    op.drop_table('mfa_failed_attempts')
    op.drop_index('ix_mfa_email_otps_user_id', table_name='mfa_email_otps')
    op.drop_table('mfa_email_otps')
    op.drop_index('ix_mfa_setup_sessions_expires_at', table_name='mfa_setup_sessions')
    op.drop_index('ix_mfa_setup_sessions_token_hash', table_name='mfa_setup_sessions')
    op.drop_index('ix_mfa_setup_sessions_user_id', table_name='mfa_setup_sessions')
    op.drop_table('mfa_setup_sessions')
    op.drop_index('ix_mfa_backup_codes_user_id', table_name='mfa_backup_codes')
    op.drop_table('mfa_backup_codes')
    op.drop_table('user_mfa')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (mfa_audit_action, mfa_method, mfa_status, user_role):
        enum_type.drop(bind, checkfirst=True)
