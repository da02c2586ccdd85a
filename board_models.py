from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import Optional, List, Set


class DeploymentState(str, Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    TRIGGERED = "triggered"
    DEPLOYED = "deployed"


class MemberRole(str, Enum):
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class RequestContext(BaseModel):
    """요청 단위 테넌트/사용자 컨텍스트. 모든 store 호출에 명시적으로 전달"""
    tenant_id: int
    email: str
    role: MemberRole = MemberRole.VIEWER

    @property
    def can_write(self) -> bool:
        return self.role in (MemberRole.ADMIN, MemberRole.EDITOR)

    def __str__(self) -> str:
        return f"RequestContext(tenant={self.tenant_id}, {self.email}, {self.role.value})"


class UnmetDependency(BaseModel):
    service_id: int
    service_name: str


class ChangeEvent(BaseModel):
    cycle_id: int
    kind: str  # state, membership, dependency, task, cycle
    service_id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ChangeSignal(BaseModel):
    """구독자에게 전달되는 병합된 변경 신호 ("무언가 바뀌었으니 다시 조회")"""
    cycle_id: int
    kinds: Set[str] = set()
    service_ids: Set[int] = set()
    count: int = 0

    def merge(self, event: ChangeEvent) -> None:
        self.kinds.add(event.kind)
        if event.service_id is not None:
            self.service_ids.add(event.service_id)
        self.count += 1

    def to_payload(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "kinds": sorted(self.kinds),
            "service_ids": sorted(self.service_ids),
            "count": self.count,
        }


class TaskView(BaseModel):
    id: int
    text: str
    completed: bool
    created_at: datetime


class DeploymentView(BaseModel):
    cycle_id: int
    service_id: int
    state: DeploymentState
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    service_name: str
    service_description: Optional[str] = ""
    cycle_label: str
    cycle_created_at: Optional[datetime] = None
    added_to_cycle_at: Optional[datetime] = None
    tasks: List[TaskView] = []


class DependencyEdge(BaseModel):
    cycle_id: int
    service_id: int
    depends_on_service_id: int


class ServiceDependencyStatus(BaseModel):
    service_id: int
    service_name: str
    is_deployed: bool


class BoardEntry(DeploymentView):
    dependencies: List[ServiceDependencyStatus] = []
    tasks_completed: int = 0
    tasks_total: int = 0


class Board(BaseModel):
    cycle_id: int
    cycle_label: str
    is_active: bool = False
    completed_at: Optional[datetime] = None
    deployments: List[BoardEntry] = []
    dependencies: List[DependencyEdge] = []

    def entry(self, service_id: int) -> Optional[BoardEntry]:
        for d in self.deployments:
            if d.service_id == service_id:
                return d
        return None
