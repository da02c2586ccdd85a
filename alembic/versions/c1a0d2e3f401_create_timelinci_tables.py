"""
create timelin-ci tables

Revision ID: c1a0d2e3f401
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'c1a0d2e3f401'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('email_domain', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_tenants_email_domain', 'tenants', ['email_domain'], unique=True)

    op.create_table(
        'tenant_members',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.String(10), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_tenant_members_tenant_email'),
    )
    op.create_index('ix_tenant_members_tenant_id', 'tenant_members', ['tenant_id'])
    op.create_index('ix_tenant_members_email', 'tenant_members', ['email'])

    op.create_table(
        'microservices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_microservices_tenant_name'),
    )
    op.create_index('ix_microservices_tenant_id', 'microservices', ['tenant_id'])

    op.create_table(
        'deployment_cycles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_by', sa.String(255), nullable=True),
        sa.UniqueConstraint('tenant_id', 'label', name='uq_deployment_cycles_tenant_label'),
    )
    op.create_index('ix_deployment_cycles_tenant_id', 'deployment_cycles', ['tenant_id'])
    op.create_index('ix_deployment_cycles_is_active', 'deployment_cycles', ['is_active'])
    op.create_index(
        'uq_deployment_cycles_one_active', 'deployment_cycles', ['tenant_id'], unique=True,
        sqlite_where=sa.text('is_active = 1'), postgresql_where=sa.text('is_active'),
    )

    op.create_table(
        'cycle_services',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cycle_id', sa.Integer(), sa.ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Integer(), sa.ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('cycle_id', 'service_id', name='uq_cycle_services_pair'),
    )
    op.create_index('ix_cycle_services_cycle_id', 'cycle_services', ['cycle_id'])
    op.create_index('ix_cycle_services_service_id', 'cycle_services', ['service_id'])

    op.create_table(
        'microservice_deps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cycle_id', sa.Integer(), sa.ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Integer(), sa.ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('depends_on_service_id', sa.Integer(), sa.ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('cycle_id', 'service_id', 'depends_on_service_id', name='uq_microservice_deps_edge'),
        sa.CheckConstraint('service_id != depends_on_service_id', name='ck_microservice_deps_no_self'),
    )
    op.create_index('ix_microservice_deps_cycle_id', 'microservice_deps', ['cycle_id'])
    op.create_index('ix_microservice_deps_service_id', 'microservice_deps', ['service_id'])
    op.create_index('ix_microservice_deps_depends_on_service_id', 'microservice_deps', ['depends_on_service_id'])

    op.create_table(
        'service_tasks',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cycle_id', sa.Integer(), sa.ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Integer(), sa.ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('completed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_service_tasks_pair', 'service_tasks', ['cycle_id', 'service_id'])

    op.create_table(
        'service_deployments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('cycle_id', sa.Integer(), sa.ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.Integer(), sa.ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='not_ready'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('updated_by', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('cycle_id', 'service_id', name='uq_service_deployments_pair'),
    )
    op.create_index('ix_service_deployments_cycle_id', 'service_deployments', ['cycle_id'])
    op.create_index('ix_service_deployments_service_id', 'service_deployments', ['service_id'])
    op.create_index('ix_service_deployments_state', 'service_deployments', ['state'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('cycle_id', sa.Integer(), nullable=True),
        sa.Column('actor', sa.String(255), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_cycle_id', 'audit_logs', ['cycle_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])

def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('service_deployments')
    op.drop_table('service_tasks')
    op.drop_table('microservice_deps')
    op.drop_table('cycle_services')
    op.drop_table('deployment_cycles')
    op.drop_table('microservices')
    op.drop_table('tenant_members')
    op.drop_table('tenants')
