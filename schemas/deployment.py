from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from board_models import DeploymentState

class ServiceDeploymentRead(BaseModel):
    cycle_id: int
    service_id: int
    state: DeploymentState
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    allowed_actions: List[str] = []
    class Config:
        from_attributes = True
