from pydantic import BaseModel
from typing import Optional
from datetime import datetime

class CycleCreate(BaseModel):
    label: str

class CycleUpdate(BaseModel):
    label: str

class CycleCopyServices(BaseModel):
    source_cycle_id: int

class CycleRead(BaseModel):
    id: int
    label: str
    created_at: datetime
    created_by: Optional[str] = None
    is_active: bool
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    class Config:
        from_attributes = True
