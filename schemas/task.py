from pydantic import BaseModel
from typing import Optional
from datetime import datetime

class TaskCreate(BaseModel):
    text: str

class TaskUpdate(BaseModel):
    text: Optional[str] = None
    completed: Optional[bool] = None

class TaskRead(BaseModel):
    id: int
    cycle_id: int
    service_id: int
    text: str
    completed: bool
    created_at: datetime
    class Config:
        from_attributes = True
