from .base import Base
from .tenant import Tenant, TenantMember
from .service import Service
from .cycle import DeploymentCycle, CycleService
from .dependency import Dependency
from .task import TaskItem
from .service_deployment import ServiceDeployment
from .audit_log import AuditLog
