import asyncio
import gc
import pytest
import pytest_asyncio
from cycle_store import CycleStore
from cycle_membership import CycleMembership
from service_pool import ServicePool
from state_machine import CycleLocks, DeploymentStateMachine, allowed_actions, resolve_action
from utils.audit import list_audit_events
from utils.exceptions import CustomException, DependenciesNotDeployed


@pytest_asyncio.fixture
async def cycle(db, ctx):
    pool = ServicePool(db, ctx)
    ids = {name: (await pool.create_service(name)).id for name in ["A", "B", "C"]}
    cid = (await CycleStore(db, ctx).create_cycle("C1")).id
    membership = CycleMembership(db, ctx)
    for sid in ids.values():
        await membership.add_service_to_cycle(cid, sid)
    ids["cycle"] = cid
    return ids


def test_allowed_actions_table():
    assert allowed_actions("not_ready") == ["ready"]
    assert allowed_actions("ready") == ["start", "reset_not_ready"]
    assert allowed_actions("triggered") == ["deployed", "reset_not_ready", "reset_ready"]
    assert allowed_actions("deployed") == ["reset_not_ready", "reset_ready", "restart"]


def test_resolve_action_aliases():
    assert resolve_action("start_deployment").action == "start"
    assert resolve_action("set_service_ready_flexible").action == "reset_ready"
    assert resolve_action("reset_triggered").action == "restart"
    with pytest.raises(CustomException) as e:
        resolve_action("launch")
    assert e.value.code == "UNKNOWN_ACTION"
    assert e.value.status_code == 400


@pytest.mark.asyncio
async def test_fresh_cycle_walkthrough(db, ctx, cycle):
    cid, a = cycle["cycle"], cycle["A"]
    machine = DeploymentStateMachine(db, ctx)

    d = await machine.set_ready(cid, a)
    assert d.state == "ready"
    assert d.updated_by == "dev@acme.com"

    d = await machine.start_deployment(cid, a)
    assert d.state == "triggered"
    assert d.started_at is not None
    assert d.finished_at is None

    d = await machine.mark_deployed(cid, a)
    assert d.state == "deployed"
    assert d.finished_at is not None
    assert d.finished_at >= d.started_at


@pytest.mark.asyncio
async def test_start_gated_on_dependencies(db, ctx, cycle):
    cid, a, b = cycle["cycle"], cycle["A"], cycle["B"]
    await CycleMembership(db, ctx).set_dependencies(cid, b, [a])
    machine = DeploymentStateMachine(db, ctx)
    await machine.set_ready(cid, b)

    with pytest.raises(DependenciesNotDeployed) as e:
        await machine.start_deployment(cid, b)
    assert e.value.code == "DEPENDENCIES_NOT_DEPLOYED"
    assert e.value.status_code == 409
    assert [(u.service_id, u.service_name) for u in e.value.unmet] == [(a, "A")]
    assert e.value.to_dict()["unmet_dependencies"] == [{"service_id": a, "service_name": "A"}]

    # 실패한 전이는 레코드를 바꾸지 않음
    d = await machine.get_deployment(cid, b)
    assert d.state == "ready"
    assert d.started_at is None

    for action in ["ready", "start", "deployed"]:
        await machine.apply(cid, a, action)
    d = await machine.start_deployment(cid, b)
    assert d.state == "triggered"


@pytest.mark.asyncio
async def test_gate_requires_every_direct_dependency(db, ctx, cycle):
    cid = cycle["cycle"]
    await CycleMembership(db, ctx).set_dependencies(cid, cycle["C"], [cycle["A"], cycle["B"]])
    machine = DeploymentStateMachine(db, ctx)
    for action in ["ready", "start", "deployed"]:
        await machine.apply(cid, cycle["A"], action)
    await machine.apply(cid, cycle["B"], "ready")
    await machine.apply(cid, cycle["C"], "ready")

    with pytest.raises(DependenciesNotDeployed) as e:
        await machine.apply(cid, cycle["C"], "start")
    assert [u.service_name for u in e.value.unmet] == ["B"]


@pytest.mark.asyncio
async def test_invalid_transitions_leave_record_unchanged(db, ctx, cycle):
    cid, a = cycle["cycle"], cycle["A"]
    machine = DeploymentStateMachine(db, ctx)
    before = await machine.get_deployment(cid, a)
    stamp = (before.state, before.updated_at)

    for action in ["start", "deployed", "reset_not_ready", "reset_ready", "restart"]:
        with pytest.raises(CustomException) as e:
            await machine.apply(cid, a, action)
        assert e.value.code == "INVALID_TRANSITION"
        assert e.value.status_code == 409

    after = await machine.get_deployment(cid, a)
    assert (after.state, after.updated_at) == stamp

    await machine.set_ready(cid, a)
    with pytest.raises(CustomException) as e:
        await machine.set_ready(cid, a)
    assert e.value.code == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_resets_clear_timestamps(db, ctx, cycle):
    cid, a = cycle["cycle"], cycle["A"]
    machine = DeploymentStateMachine(db, ctx)
    for action in ["ready", "start", "deployed"]:
        await machine.apply(cid, a, action)

    d = await machine.reset_to_ready(cid, a)
    assert d.state == "ready"
    assert (d.started_at, d.finished_at) == (None, None)

    await machine.start_deployment(cid, a)
    d = await machine.reset_to_not_ready(cid, a)
    assert d.state == "not_ready"
    assert (d.started_at, d.finished_at) == (None, None)


@pytest.mark.asyncio
async def test_restart_stamps_new_attempt(db, ctx, cycle):
    cid, a = cycle["cycle"], cycle["A"]
    machine = DeploymentStateMachine(db, ctx)
    for action in ["ready", "start"]:
        await machine.apply(cid, a, action)
    first_start = (await machine.mark_deployed(cid, a)).started_at

    d = await machine.restart_deployment(cid, a)
    assert d.state == "triggered"
    assert d.started_at >= first_start
    assert d.finished_at is None


@pytest.mark.asyncio
async def test_restart_is_gated(db, ctx, cycle):
    cid, a, b = cycle["cycle"], cycle["A"], cycle["B"]
    machine = DeploymentStateMachine(db, ctx)
    for action in ["ready", "start", "deployed"]:
        await machine.apply(cid, a, action)
        await machine.apply(cid, b, action)
    await CycleMembership(db, ctx).set_dependencies(cid, b, [a])
    await machine.reset_to_ready(cid, a)

    with pytest.raises(DependenciesNotDeployed):
        await machine.restart_deployment(cid, b)
    assert (await machine.get_deployment(cid, b)).state == "deployed"


@pytest.mark.asyncio
async def test_alias_actions(db, ctx, cycle):
    cid, a = cycle["cycle"], cycle["A"]
    machine = DeploymentStateMachine(db, ctx)
    await machine.apply(cid, a, "set_service_ready")
    await machine.apply(cid, a, "start_deployment")
    d = await machine.apply(cid, a, "mark_deployed")
    assert d.state == "deployed"


@pytest.mark.asyncio
async def test_unknown_pair_and_tenant(db, ctx, other_ctx, cycle):
    cid = cycle["cycle"]
    outsider = (await ServicePool(db, ctx).create_service("outsider")).id
    machine = DeploymentStateMachine(db, ctx)
    with pytest.raises(CustomException) as e:
        await machine.apply(cid, outsider, "ready")
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"

    with pytest.raises(CustomException) as e:
        await DeploymentStateMachine(db, other_ctx).apply(cid, cycle["A"], "ready")
    assert e.value.code == "CYCLE_NOT_FOUND"
    assert (await machine.get_deployment(cid, cycle["A"])).state == "not_ready"


def test_cycle_locks_are_per_cycle():
    locks = CycleLocks()
    first = locks.get(1, 10)
    assert locks.get(1, 10) is first
    assert locks.get(1, 11) is not first
    assert locks.get(2, 10) is not first


@pytest.mark.asyncio
async def test_cycle_locks_are_dropped_when_unused():
    locks = CycleLocks()
    async with locks.hold(1, 10):
        assert len(locks) == 1
        assert locks.get(1, 10).locked()
    gc.collect()
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_shared_locks_serialize_transitions():
    locks = CycleLocks()
    order = []

    async def worker(name):
        async with locks.hold(1, 10):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("x"), worker("y"))
    assert order == ["x-in", "x-out", "y-in", "y-out"]


@pytest.mark.asyncio
@pytest.mark.parametrize("reset_first", [True, False])
async def test_concurrent_reset_and_gated_start(file_session_factory, file_ctx, reset_first):
    async with file_session_factory() as session:
        pool = ServicePool(session, file_ctx)
        a = (await pool.create_service("A")).id
        b = (await pool.create_service("B")).id
        cid = (await CycleStore(session, file_ctx).create_cycle("C1")).id
        membership = CycleMembership(session, file_ctx)
        await membership.add_service_to_cycle(cid, a)
        await membership.add_service_to_cycle(cid, b)
        await membership.set_dependencies(cid, b, [a])
        machine = DeploymentStateMachine(session, file_ctx)
        for action in ["ready", "start", "deployed"]:
            await machine.apply(cid, a, action)
        await machine.apply(cid, b, "ready")

    locks = CycleLocks()

    async def run(service_id, action):
        async with file_session_factory() as session:
            machine = DeploymentStateMachine(session, file_ctx, locks=locks)
            return (await machine.apply(cid, service_id, action)).state

    calls = [run(a, "reset_not_ready"), run(b, "start")]
    if not reset_first:
        calls.reverse()
    results = await asyncio.gather(*calls, return_exceptions=True)
    if not reset_first:
        results.reverse()
    reset_result, start_result = results
    assert reset_result == "not_ready"

    async with file_session_factory() as session:
        machine = DeploymentStateMachine(session, file_ctx)
        dep_a = await machine.get_deployment(cid, a)
        dep_b = await machine.get_deployment(cid, b)
        events = await list_audit_events(session, file_ctx, cycle_id=cid)
    reset_id = next(e.id for e in events if e.action == "deployment_reset_not_ready")
    start_ids = [e.id for e in events if e.action == "deployment_start" and e.detail.startswith("B:")]

    assert dep_a.state == "not_ready"
    assert dep_a.started_at is None
    if isinstance(start_result, Exception):
        # A가 먼저 내려갔으면 B는 게이트에서 막히고 기록도 그대로
        assert isinstance(start_result, DependenciesNotDeployed)
        assert [u.service_name for u in start_result.unmet] == ["A"]
        assert dep_b.state == "ready"
        assert dep_b.started_at is None
        assert start_ids == []
    else:
        # B는 A가 아직 deployed 일 때 커밋됨
        assert start_result == "triggered"
        assert dep_b.state == "triggered"
        assert dep_b.started_at is not None
        assert len(start_ids) == 1 and start_ids[0] < reset_id
