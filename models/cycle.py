from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint, Index, text
from sqlalchemy.orm import relationship
from .base import Base, utcnow


class DeploymentCycle(Base):
    __tablename__ = 'deployment_cycles'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'label', name='uq_deployment_cycles_tenant_label'),
        # 테넌트당 활성 사이클은 하나
        Index(
            'uq_deployment_cycles_one_active', 'tenant_id', unique=True,
            sqlite_where=text('is_active = 1'), postgresql_where=text('is_active'),
        ),
    )
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    label = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    created_by = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by = Column(String(255), nullable=True)
    # 관계
    memberships = relationship('CycleService', back_populates='cycle')

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def __repr__(self):
        return f"<DeploymentCycle(id={self.id}, label='{self.label}', is_active={self.is_active})>"


class CycleService(Base):
    __tablename__ = 'cycle_services'
    __table_args__ = (
        UniqueConstraint('cycle_id', 'service_id', name='uq_cycle_services_pair'),
    )
    id = Column(Integer, primary_key=True, index=True)
    cycle_id = Column(Integer, ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    cycle = relationship('DeploymentCycle', back_populates='memberships')
    service = relationship('Service')

    def __repr__(self):
        return f"<CycleService(cycle_id={self.cycle_id}, service_id={self.service_id})>"
