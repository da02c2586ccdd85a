from sqlalchemy import Column, Integer, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from .base import Base, utcnow


class Dependency(Base):
    __tablename__ = 'microservice_deps'
    __table_args__ = (
        UniqueConstraint('cycle_id', 'service_id', 'depends_on_service_id', name='uq_microservice_deps_edge'),
        CheckConstraint('service_id != depends_on_service_id', name='ck_microservice_deps_no_self'),
    )
    id = Column(Integer, primary_key=True, index=True)
    cycle_id = Column(Integer, ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False, index=True)
    depends_on_service_id = Column(Integer, ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Dependency(cycle_id={self.cycle_id}, {self.service_id} -> {self.depends_on_service_id})>"
