from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from .base import Base, utcnow


class Service(Base):
    __tablename__ = 'microservices'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'name', name='uq_microservices_tenant_name'),
    )
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True, default="")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Service(id={self.id}, tenant_id={self.tenant_id}, name='{self.name}')>"
