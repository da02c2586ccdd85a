from pydantic import BaseModel
from typing import Optional
from datetime import datetime

class ServiceBase(BaseModel):
    name: str
    description: Optional[str] = ""

class ServiceCreate(ServiceBase):
    pass

class ServiceUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

class ServiceRead(ServiceBase):
    id: int
    created_at: datetime
    class Config:
        from_attributes = True

class TenantServiceRead(ServiceRead):
    in_cycles: int = 0

class CycleServiceRead(ServiceRead):
    added_to_cycle_at: Optional[datetime] = None
    deployment_state: str
