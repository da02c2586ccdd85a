from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base, utcnow


class Tenant(Base):
    __tablename__ = 'tenants'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email_domain = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    members = relationship('TenantMember', back_populates='tenant')

    def __repr__(self):
        return f"<Tenant(id={self.id}, name='{self.name}', email_domain='{self.email_domain}')>"


class TenantMember(Base):
    __tablename__ = 'tenant_members'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'email', name='uq_tenant_members_tenant_email'),
    )
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    role = Column(String(10), nullable=False, default='EDITOR')  # ADMIN, EDITOR, VIEWER
    created_at = Column(DateTime, default=utcnow, nullable=False)
    tenant = relationship('Tenant', back_populates='members')

    def __repr__(self):
        return f"<TenantMember(id={self.id}, tenant_id={self.tenant_id}, email='{self.email}', role='{self.role}')>"
