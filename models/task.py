from sqlalchemy import Column, Integer, Text, DateTime, Boolean, ForeignKey, Index
from .base import Base, utcnow


class TaskItem(Base):
    __tablename__ = 'service_tasks'
    __table_args__ = (
        Index('ix_service_tasks_pair', 'cycle_id', 'service_id'),
    )
    id = Column(Integer, primary_key=True, index=True)
    cycle_id = Column(Integer, ForeignKey('deployment_cycles.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(Integer, ForeignKey('microservices.id', ondelete='CASCADE'), nullable=False)
    text = Column(Text, nullable=False)  # markdown
    completed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<TaskItem(id={self.id}, cycle_id={self.cycle_id}, service_id={self.service_id}, completed={self.completed})>"
