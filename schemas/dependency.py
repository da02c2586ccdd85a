from pydantic import BaseModel
from typing import List

class CycleMembershipCreate(BaseModel):
    service_id: int

class DependencySet(BaseModel):
    dependency_ids: List[int] = []

class CopyFromCycle(BaseModel):
    from_cycle_id: int

class DependencyRead(BaseModel):
    cycle_id: int
    service_id: int
    depends_on_service_id: int
    class Config:
        from_attributes = True
