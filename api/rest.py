from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.responses import JSONResponse, StreamingResponse
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import json
import logging

from board_models import Board, ChangeEvent, DeploymentState, DeploymentView, RequestContext, UnmetDependency
from core.config import EVENT_KEEPALIVE_SECONDS
from core.db import get_db, init_engine
from api.auth import get_current_user, require_editor, require_admin
from cycle_store import CycleStore
from cycle_membership import CycleMembership
from dependency_gate import DependencyGate
from deployment_views import DeploymentViews
from notifications import InMemoryBroker
from service_pool import ServicePool
from state_machine import CycleLocks, DeploymentStateMachine, allowed_actions
from task_store import TaskStore
from schemas.audit_log import AuditLogRead
from schemas.cycle import CycleCreate, CycleUpdate, CycleCopyServices, CycleRead
from schemas.dependency import CycleMembershipCreate, DependencySet, CopyFromCycle, DependencyRead
from schemas.deployment import ServiceDeploymentRead
from schemas.service import ServiceCreate, ServiceUpdate, ServiceRead, TenantServiceRead, CycleServiceRead
from schemas.task import TaskCreate, TaskUpdate, TaskRead
from utils.audit import list_audit_events
from utils.exceptions import CustomException

logger = logging.getLogger(__name__)


def create_app(broker=None) -> FastAPI:
    app = FastAPI(title="Timelin-CI", description="Microservice deployment cycle coordination")
    app.state.broker = broker if broker is not None else InMemoryBroker()
    app.state.cycle_locks = CycleLocks()
    app.state.keepalive_seconds = EVENT_KEEPALIVE_SECONDS

    @app.on_event("startup")
    async def on_startup():
        init_engine()

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.broker is not None:
            await app.state.broker.close()

    # 커밋 이후 변경 알림. 알림 실패가 이미 커밋된 작업을 실패로 만들지 않음
    async def notify(request: Request, cycle_id: int, kind: str, service_id: Optional[int] = None):
        broker = request.app.state.broker
        if broker is None:
            return
        try:
            await broker.publish(ChangeEvent(cycle_id=cycle_id, kind=kind, service_id=service_id))
        except Exception as e:
            logger.warning(f"[notify] cycle={cycle_id} kind={kind} publish failed: {e}")

    def deployment_response(deployment) -> ServiceDeploymentRead:
        data = ServiceDeploymentRead.model_validate(deployment)
        data.allowed_actions = allowed_actions(deployment.state)
        return data

    # --- 사이클 ---

    @app.get("/api/cycles", response_model=List[CycleRead])
    async def list_cycles(db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleStore(db, ctx).list_cycles()

    @app.post("/api/cycles", response_model=CycleRead, status_code=201)
    async def create_deployment_cycle(body: CycleCreate, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        cycle = await CycleStore(db, ctx).create_cycle(body.label)
        await notify(request, cycle.id, "cycle")
        return cycle

    @app.get("/api/cycles/active", response_model=Optional[CycleRead])
    async def get_active_cycle(db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleStore(db, ctx).get_active_cycle()

    @app.get("/api/cycles/latest", response_model=Optional[Board])
    async def get_latest_cycle(db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await DeploymentViews(db, ctx).latest_cycle_board()

    @app.post("/api/cycles/complete-active", response_model=CycleRead)
    async def complete_active_cycle(request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        cycle = await CycleStore(db, ctx).complete_active_cycle()
        await notify(request, cycle.id, "cycle")
        return cycle

    @app.get("/api/cycles/{cycle_id}", response_model=CycleRead)
    async def get_cycle(cycle_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleStore(db, ctx).get_cycle(cycle_id)

    @app.patch("/api/cycles/{cycle_id}", response_model=CycleRead)
    async def update_cycle_name(cycle_id: int, body: CycleUpdate, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        cycle = await CycleStore(db, ctx).rename_cycle(cycle_id, body.label)
        await notify(request, cycle.id, "cycle")
        return cycle

    @app.post("/api/cycles/{cycle_id}/activate", response_model=CycleRead)
    async def activate_cycle(cycle_id: int, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        cycle = await CycleStore(db, ctx).activate_cycle(cycle_id)
        await notify(request, cycle.id, "cycle")
        return cycle

    @app.post("/api/cycles/{cycle_id}/copy-services", response_model=List[int])
    async def copy_services_to_cycle(cycle_id: int, body: CycleCopyServices, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        added = await CycleMembership(db, ctx).copy_services(body.source_cycle_id, cycle_id)
        await notify(request, cycle_id, "membership")
        return added

    # --- 서비스 풀 ---

    @app.get("/api/services", response_model=List[TenantServiceRead])
    async def get_tenant_services(db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await ServicePool(db, ctx).list_services()

    @app.post("/api/services", response_model=ServiceRead, status_code=201)
    async def create_microservice(body: ServiceCreate, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        return await ServicePool(db, ctx).create_service(body.name, body.description)

    @app.get("/api/services/{service_id}", response_model=ServiceRead)
    async def get_microservice(service_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await ServicePool(db, ctx).get_service(service_id)

    @app.patch("/api/services/{service_id}", response_model=ServiceRead)
    async def update_microservice(service_id: int, body: ServiceUpdate, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        return await ServicePool(db, ctx).update_service(service_id, body.name, body.description)

    # --- 사이클 멤버십 / 의존성 ---

    @app.get("/api/cycles/{cycle_id}/services", response_model=List[CycleServiceRead])
    async def get_cycle_services(cycle_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleMembership(db, ctx).list_cycle_services(cycle_id)

    @app.get("/api/cycles/{cycle_id}/available-services", response_model=List[ServiceRead])
    async def get_available_services_for_cycle(cycle_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleMembership(db, ctx).list_available_services(cycle_id)

    @app.post("/api/cycles/{cycle_id}/services", status_code=201)
    async def add_service_to_cycle(cycle_id: int, body: CycleMembershipCreate, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        membership = await CycleMembership(db, ctx).add_service_to_cycle(cycle_id, body.service_id)
        await notify(request, cycle_id, "membership", body.service_id)
        return {"cycle_id": membership.cycle_id, "service_id": membership.service_id}

    @app.delete("/api/cycles/{cycle_id}/services/{service_id}", status_code=204)
    async def remove_service_from_cycle(cycle_id: int, service_id: int, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        await CycleMembership(db, ctx).remove_service_from_cycle(cycle_id, service_id)
        await notify(request, cycle_id, "membership", service_id)

    @app.get("/api/cycles/{cycle_id}/dependencies", response_model=List[DependencyRead])
    async def list_cycle_dependencies(cycle_id: int, service_id: Optional[int] = None, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await CycleMembership(db, ctx).list_dependencies(cycle_id, service_id)

    @app.put("/api/cycles/{cycle_id}/services/{service_id}/dependencies", response_model=List[DependencyRead])
    async def set_service_dependencies(cycle_id: int, service_id: int, body: DependencySet, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        edges = await CycleMembership(db, ctx).set_dependencies(cycle_id, service_id, body.dependency_ids)
        await notify(request, cycle_id, "dependency", service_id)
        return edges

    @app.post("/api/cycles/{cycle_id}/services/{service_id}/dependencies/copy", response_model=List[DependencyRead])
    async def copy_service_dependencies(cycle_id: int, service_id: int, body: CopyFromCycle, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        edges = await CycleMembership(db, ctx).copy_dependencies(service_id, body.from_cycle_id, cycle_id)
        await notify(request, cycle_id, "dependency", service_id)
        return edges

    # --- 태스크 ---

    @app.get("/api/cycles/{cycle_id}/services/{service_id}/tasks", response_model=List[TaskRead])
    async def get_service_tasks(cycle_id: int, service_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await TaskStore(db, ctx).list_tasks(cycle_id, service_id)

    @app.post("/api/cycles/{cycle_id}/services/{service_id}/tasks", response_model=TaskRead, status_code=201)
    async def add_task_to_service(cycle_id: int, service_id: int, body: TaskCreate, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        task = await TaskStore(db, ctx).add_task(cycle_id, service_id, body.text)
        await notify(request, cycle_id, "task", service_id)
        return task

    @app.post("/api/cycles/{cycle_id}/services/{service_id}/tasks/copy", response_model=List[TaskRead])
    async def copy_service_tasks(cycle_id: int, service_id: int, body: CopyFromCycle, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        tasks = await TaskStore(db, ctx).copy_tasks(service_id, body.from_cycle_id, cycle_id)
        await notify(request, cycle_id, "task", service_id)
        return tasks

    @app.patch("/api/cycles/{cycle_id}/services/{service_id}/tasks/{task_id}", response_model=TaskRead)
    async def update_task(cycle_id: int, service_id: int, task_id: int, body: TaskUpdate, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        task = await TaskStore(db, ctx).update_task(
            cycle_id, service_id, task_id, text=body.text, completed=body.completed
        )
        await notify(request, cycle_id, "task", service_id)
        return task

    @app.delete("/api/cycles/{cycle_id}/services/{service_id}/tasks/{task_id}", status_code=204)
    async def remove_task_from_service(cycle_id: int, service_id: int, task_id: int, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        await TaskStore(db, ctx).remove_task(cycle_id, service_id, task_id)
        await notify(request, cycle_id, "task", service_id)

    # --- 배포 상태 ---

    @app.get("/api/cycles/{cycle_id}/services/{service_id}/deployment", response_model=ServiceDeploymentRead)
    async def get_service_deployment(cycle_id: int, service_id: int, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        machine = DeploymentStateMachine(db, ctx, locks=request.app.state.cycle_locks)
        return deployment_response(await machine.get_deployment(cycle_id, service_id))

    @app.post("/api/cycles/{cycle_id}/services/{service_id}/actions/{action}", response_model=ServiceDeploymentRead)
    async def change_deployment_state(cycle_id: int, service_id: int, action: str, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_editor)):
        machine = DeploymentStateMachine(db, ctx, locks=request.app.state.cycle_locks)
        deployment = await machine.apply(cycle_id, service_id, action)
        await notify(request, cycle_id, "state", service_id)
        return deployment_response(deployment)

    @app.get("/api/cycles/{cycle_id}/services/{service_id}/unmet-dependencies", response_model=List[UnmetDependency])
    async def get_unmet_dependencies(cycle_id: int, service_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await DependencyGate(db, ctx).unmet_dependencies(cycle_id, service_id)

    # --- 조회 모델 ---

    @app.get("/api/cycles/{cycle_id}/deployments", response_model=List[DeploymentView])
    async def get_cycle_deployments(cycle_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await DeploymentViews(db, ctx).deployments_view(cycle_id)

    @app.get("/api/cycles/{cycle_id}/board", response_model=Board)
    async def get_cycle_board(cycle_id: int, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        return await DeploymentViews(db, ctx).board(cycle_id)

    @app.get("/api/history", response_model=List[DeploymentView])
    async def get_deployment_history(
        cycle_id: Optional[int] = None,
        state: Optional[DeploymentState] = None,
        search: Optional[str] = None,
        limit: int = Query(200, ge=1, le=1000),
        db: AsyncSession = Depends(get_db),
        ctx: RequestContext = Depends(get_current_user),
    ):
        return await DeploymentViews(db, ctx).history(
            cycle_id=cycle_id, state=state.value if state else None, search=search, limit=limit
        )

    # --- 변경 스트림 (SSE) ---

    @app.get("/api/cycles/{cycle_id}/events")
    async def cycle_events(cycle_id: int, request: Request, db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(get_current_user)):
        await CycleStore(db, ctx).get_cycle(cycle_id)
        broker = request.app.state.broker
        if broker is None:
            raise HTTPException(status_code=503, detail="Change notifications are disabled")
        subscription = broker.subscribe(cycle_id)
        keepalive = request.app.state.keepalive_seconds

        async def event_stream():
            try:
                yield f"event: ready\ndata: {json.dumps({'cycle_id': cycle_id})}\n\n"
                while not subscription.closed:
                    if await request.is_disconnected():
                        break
                    signal = await subscription.next(timeout=keepalive)
                    if signal is None:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: change\ndata: {json.dumps(signal.to_payload())}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    # --- 기타 ---

    @app.get("/users/me", response_model=RequestContext)
    async def read_users_me(ctx: RequestContext = Depends(get_current_user)):
        return ctx

    @app.get("/api/audit/logs", response_model=List[AuditLogRead])
    async def get_audit_logs(cycle_id: Optional[int] = None, limit: int = Query(100, ge=1, le=1000), db: AsyncSession = Depends(get_db), ctx: RequestContext = Depends(require_admin)):
        return await list_audit_events(db, ctx, cycle_id=cycle_id, limit=limit)

    @app.get("/health/db")
    async def health_db(db: AsyncSession = Depends(get_db)):
        try:
            await db.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as e:
            logger.error(f"[health] db check failed: {e}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": str(e)})

    @app.exception_handler(CustomException)
    async def custom_exception_handler(request: Request, exc: CustomException):
        logger.warning(f"[{exc.code}] {exc.dev_message} | {request.url}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict()
        )

    return app


app = create_app()
