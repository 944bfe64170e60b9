"""Initial control plane tables

Revision ID: 001_initial_control_plane
Revises:
Create Date: 2026-10-18

Creates the runner fleet schema: infrastructures, runners, orders, Caddy
and Nginx route registries, deployments and deployment steps.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial_control_plane'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum types store member names, as SQLAlchemy's Enum(PyEnum) does.
infrastructuretype = postgresql.ENUM(
    'VPS', 'BARE_METAL', 'CLOUD',
    name='infrastructuretype', create_type=False,
)
runnerstatus = postgresql.ENUM(
    'ONLINE', 'OFFLINE', 'PAUSED',
    name='runnerstatus', create_type=False,
)
orderstatus = postgresql.ENUM(
    'PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'CANCELLED',
    name='orderstatus', create_type=False,
)
ordercategory = postgresql.ENUM(
    'INSTALLATION', 'UPDATE', 'SECURITY', 'MAINTENANCE', 'DETECTION',
    name='ordercategory', create_type=False,
)
httpsstatus = postgresql.ENUM(
    'PENDING', 'PROVISIONING', 'OK', 'FAILED',
    name='httpsstatus', create_type=False,
)
deploymenttype = postgresql.ENUM(
    'NODEJS', 'DOCKER_COMPOSE', 'STATIC_SITE', 'CUSTOM',
    name='deploymenttype', create_type=False,
)
deploymentstatus = postgresql.ENUM(
    'DRAFT', 'PLANNING', 'READY', 'RUNNING', 'APPLIED', 'FAILED', 'ROLLED_BACK',
    name='deploymentstatus', create_type=False,
)
deploymentsteptype = postgresql.ENUM(
    'CLONE_REPO', 'CHECKOUT', 'ENV_WRITE', 'INSTALL_DEPS', 'BUILD', 'START',
    'HEALTHCHECK', 'EXPOSE', 'FINALIZE', 'STOP', 'ROLLBACK', 'CUSTOM',
    name='deploymentsteptype', create_type=False,
)
deploymentstepstatus = postgresql.ENUM(
    'PENDING', 'RUNNING', 'APPLIED', 'FAILED', 'CANCELLED', 'SKIPPED',
    name='deploymentstepstatus', create_type=False,
)
healthchecktype = postgresql.ENUM(
    'HTTP', 'TCP', 'COMMAND',
    name='healthchecktype', create_type=False,
)

ALL_ENUMS = (
    infrastructuretype,
    runnerstatus,
    orderstatus,
    ordercategory,
    httpsstatus,
    deploymenttype,
    deploymentstatus,
    deploymentsteptype,
    deploymentstepstatus,
    healthchecktype,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _route_table(name: str) -> None:
    op.create_table(
        name,
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('infrastructure_id', sa.UUID(), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=False),
        sa.Column('subdomain', sa.String(length=255), nullable=True),
        sa.Column('full_domain', sa.String(length=512), nullable=False),
        sa.Column('backend_host', sa.String(length=255), nullable=False),
        sa.Column('backend_port', sa.Integer(), nullable=False),
        sa.Column('backend_protocol', sa.String(length=10), nullable=False),
        sa.Column('https_enabled', sa.Boolean(), nullable=False),
        sa.Column('https_status', httpsstatus, nullable=False),
        sa.Column('consumed_by', sa.String(length=255), nullable=True),
        sa.Column('verification_order_id', sa.UUID(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['infrastructure_id'], ['infrastructures.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('infrastructure_id', 'full_domain', name=f'uq_{name}_infra_domain'),
    )
    op.create_index(f'ix_{name}_infrastructure_id', name, ['infrastructure_id'])
    op.create_index(f'ix_{name}_https_status', name, ['https_status'])


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    # Infrastructures
    op.create_table(
        'infrastructures',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('type', infrastructuretype, nullable=False),
        sa.Column('os', sa.String(length=100), nullable=True),
        sa.Column('distribution', sa.String(length=100), nullable=True),
        sa.Column('architecture', sa.String(length=50), nullable=True),
        sa.Column('cpu_cores', sa.Integer(), nullable=True),
        sa.Column('ram_gb', sa.Integer(), nullable=True),
        sa.Column('disk_gb', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('capabilities', sa.JSON(), nullable=False),
        sa.Column('observed_capabilities', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    # Runners
    op.create_table(
        'runners',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('status', runnerstatus, nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('host_info', sa.JSON(), nullable=False),
        sa.Column('capabilities', sa.JSON(), nullable=False),
        sa.Column('observed_capabilities', sa.JSON(), nullable=False),
        sa.Column('infrastructure_id', sa.UUID(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['infrastructure_id'], ['infrastructures.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_runners_name', 'runners', ['name'], unique=True)
    op.create_index('ix_runners_token_hash', 'runners', ['token_hash'], unique=True)
    op.create_index('ix_runners_infrastructure_id', 'runners', ['infrastructure_id'])

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('runner_id', sa.UUID(), nullable=False),
        sa.Column('infrastructure_id', sa.UUID(), nullable=True),
        sa.Column('category', ordercategory, nullable=False),
        sa.Column('name', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('command', sa.Text(), nullable=False),
        sa.Column('status', orderstatus, nullable=False),
        sa.Column('progress', sa.Integer(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        sa.Column('stdout_tail', sa.Text(), nullable=True),
        sa.Column('stderr_tail', sa.Text(), nullable=True),
        sa.Column('report_incomplete', sa.Boolean(), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['runner_id'], ['runners.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['infrastructure_id'], ['infrastructures.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_runner_id', 'orders', ['runner_id'])
    op.create_index('ix_orders_infrastructure_id', 'orders', ['infrastructure_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    # Reverse proxy routes
    _route_table('caddy_routes')
    _route_table('nginx_routes')

    # Deployments
    op.create_table(
        'deployments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('app_name', sa.String(length=255), nullable=False),
        sa.Column('repo_url', sa.String(length=2000), nullable=False),
        sa.Column('branch', sa.String(length=255), nullable=False),
        sa.Column('deploy_type', deploymenttype, nullable=False),
        sa.Column('runner_id', sa.UUID(), nullable=False),
        sa.Column('infrastructure_id', sa.UUID(), nullable=True),
        sa.Column('status', deploymentstatus, nullable=False),
        sa.Column('current_step', sa.String(length=100), nullable=True),
        sa.Column('working_dir', sa.String(length=1000), nullable=True),
        sa.Column('port', sa.Integer(), nullable=False),
        sa.Column('start_command', sa.Text(), nullable=True),
        sa.Column('build_command', sa.Text(), nullable=True),
        sa.Column('healthcheck_type', healthchecktype, nullable=False),
        sa.Column('healthcheck_value', sa.String(length=1000), nullable=True),
        sa.Column('env_vars', sa.JSON(), nullable=False),
        sa.Column('expose_via_caddy', sa.Boolean(), nullable=False),
        sa.Column('domain', sa.String(length=512), nullable=True),
        sa.Column('rolled_back_from', sa.UUID(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['runner_id'], ['runners.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['infrastructure_id'], ['infrastructures.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['rolled_back_from'], ['deployments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deployments_app_name', 'deployments', ['app_name'])
    op.create_index('ix_deployments_runner_id', 'deployments', ['runner_id'])
    op.create_index('ix_deployments_status', 'deployments', ['status'])

    op.create_table(
        'deployment_steps',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('deployment_id', sa.UUID(), nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('step_type', deploymentsteptype, nullable=False),
        sa.Column('step_name', sa.String(length=255), nullable=False),
        sa.Column('command', sa.Text(), nullable=False),
        sa.Column('order_id', sa.UUID(), nullable=True),
        sa.Column('status', deploymentstepstatus, nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('stdout_tail', sa.Text(), nullable=True),
        sa.Column('stderr_tail', sa.Text(), nullable=True),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['deployment_id'], ['deployments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('deployment_id', 'step_order', name='uq_deployment_steps_order'),
    )
    op.create_index('ix_deployment_steps_deployment_id', 'deployment_steps', ['deployment_id'])
    op.create_index('ix_deployment_steps_order_id', 'deployment_steps', ['order_id'])


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('deployment_steps')
    op.drop_table('deployments')
    op.drop_table('nginx_routes')
    op.drop_table('caddy_routes')
    op.drop_table('orders')
    op.drop_table('runners')
    op.drop_table('infrastructures')

    # Drop enums
    for enum_type in reversed(ALL_ENUMS):
        op.execute(f"DROP TYPE IF EXISTS {enum_type.name}")
