from pydantic import BaseModel
from typing import Optional
from datetime import datetime

class AuditLogRead(BaseModel):
    id: int
    cycle_id: Optional[int] = None
    actor: Optional[str] = None
    action: str
    detail: Optional[str] = None
    created_at: datetime
    class Config:
        from_attributes = True
