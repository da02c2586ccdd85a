from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from .base import Base, utcnow


class AuditLog(Base):
    __tablename__ = 'audit_logs'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    cycle_id = Column(Integer, nullable=True, index=True)
    actor = Column(String(255), nullable=True)
    action = Column(String(50), nullable=False, index=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, tenant_id={self.tenant_id}, action='{self.action}')>"
