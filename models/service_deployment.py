from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from .base import Base, utcnow
from board_models import DeploymentState


class ServiceDeployment(Base):
    __tablename__ = 'service_deployments'
    __table_args__ = (
        UniqueConstraint('cycle_id', 'service_id', name='uq_service_deployments_pair'),
    )
    id = Column(Integer, primary_key=True, index=True)
    cycle_id = Column(Integer, ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False, index=True)
    state = Column(String(20), nullable=False, default=DeploymentState.NOT_READY.value, index=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_by = Column(String(255), nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<ServiceDeployment(cycle_id={self.cycle_id}, service_id={self.service_id}, state='{self.state}')>"
