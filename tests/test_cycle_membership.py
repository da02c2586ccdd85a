import pytest
import pytest_asyncio
from cycle_store import CycleStore
from cycle_membership import CycleMembership, find_dependency_path
from service_pool import ServicePool
from state_machine import DeploymentStateMachine
from task_store import TaskStore
from utils.exceptions import CustomException


@pytest_asyncio.fixture
async def setup(db, ctx):
    pool = ServicePool(db, ctx)
    ids = {}
    for name in ["A", "B", "C", "D"]:
        ids[name] = (await pool.create_service(name)).id
    ids["cycle"] = (await CycleStore(db, ctx).create_cycle("C1")).id
    return ids


def test_find_dependency_path():
    edges = {1: {2}, 2: {3}, 3: set(), 4: {1}}
    assert find_dependency_path(edges, 1, 3) == [1, 2, 3]
    assert find_dependency_path(edges, 4, 3) == [4, 1, 2, 3]
    assert find_dependency_path(edges, 3, 1) is None


@pytest.mark.asyncio
async def test_add_service_creates_not_ready_record(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    await membership.add_service_to_cycle(cid, setup["A"])
    services = await membership.list_cycle_services(cid)
    assert [(s["name"], s["deployment_state"]) for s in services] == [("A", "not_ready")]
    deployment = await DeploymentStateMachine(db, ctx).get_deployment(cid, setup["A"])
    assert deployment.state == "not_ready"
    assert deployment.started_at is None

    with pytest.raises(CustomException) as e:
        await membership.add_service_to_cycle(cid, setup["A"])
    assert e.value.code == "SERVICE_ALREADY_IN_CYCLE"
    assert e.value.status_code == 409


@pytest.mark.asyncio
async def test_add_unknown_service(db, ctx, other_ctx, setup):
    foreign = (await ServicePool(db, other_ctx).create_service("foreign")).id
    with pytest.raises(CustomException) as e:
        await CycleMembership(db, ctx).add_service_to_cycle(setup["cycle"], foreign)
    assert e.value.code == "SERVICE_NOT_FOUND"


@pytest.mark.asyncio
async def test_available_services_excludes_members(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    await membership.add_service_to_cycle(cid, setup["B"])
    available = await membership.list_available_services(cid)
    assert [s.name for s in available] == ["A", "C", "D"]


@pytest.mark.asyncio
async def test_set_dependencies_replaces_edges(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    for name in ["A", "B", "C"]:
        await membership.add_service_to_cycle(cid, setup[name])
    await membership.set_dependencies(cid, setup["C"], [setup["A"], setup["B"]])
    edges = await membership.list_dependencies(cid, setup["C"])
    assert sorted(e.depends_on_service_id for e in edges) == sorted([setup["A"], setup["B"]])

    await membership.set_dependencies(cid, setup["C"], [setup["B"]])
    edges = await membership.list_dependencies(cid, setup["C"])
    assert [e.depends_on_service_id for e in edges] == [setup["B"]]

    await membership.set_dependencies(cid, setup["C"], [])
    assert await membership.list_dependencies(cid) == []


@pytest.mark.asyncio
async def test_dependencies_must_be_members(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    await membership.add_service_to_cycle(cid, setup["A"])
    await membership.add_service_to_cycle(cid, setup["B"])

    with pytest.raises(CustomException) as e:
        await membership.set_dependencies(cid, setup["B"], [setup["A"], setup["D"]])
    assert e.value.code == "INVALID_DEPENDENCY"
    assert e.value.status_code == 422

    with pytest.raises(CustomException) as e:
        await membership.set_dependencies(cid, setup["B"], [setup["B"]])
    assert e.value.code == "INVALID_DEPENDENCY"

    # 실패한 호출은 아무것도 남기지 않음
    assert await membership.list_dependencies(cid) == []

    with pytest.raises(CustomException) as e:
        await membership.set_dependencies(cid, setup["D"], [setup["A"]])
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"


@pytest.mark.asyncio
async def test_circular_dependency_rejected(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    for name in ["A", "B", "C"]:
        await membership.add_service_to_cycle(cid, setup[name])
    await membership.set_dependencies(cid, setup["B"], [setup["A"]])
    await membership.set_dependencies(cid, setup["C"], [setup["B"]])

    with pytest.raises(CustomException) as e:
        await membership.set_dependencies(cid, setup["A"], [setup["C"]])
    assert e.value.code == "CIRCULAR_DEPENDENCY"
    assert "A -> C -> B -> A" in e.value.message
    edges = await membership.list_dependencies(cid)
    assert len(edges) == 2


@pytest.mark.asyncio
async def test_remove_service_cascades(db, ctx, setup):
    cid = setup["cycle"]
    membership = CycleMembership(db, ctx)
    for name in ["A", "B", "C"]:
        await membership.add_service_to_cycle(cid, setup[name])
    await membership.set_dependencies(cid, setup["B"], [setup["A"]])
    await membership.set_dependencies(cid, setup["C"], [setup["B"]])
    await TaskStore(db, ctx).add_task(cid, setup["B"], "smoke test")

    await membership.remove_service_from_cycle(cid, setup["B"])

    assert [s["name"] for s in await membership.list_cycle_services(cid)] == ["A", "C"]
    # B 에서 나가는 간선과 B 로 들어오는 간선 모두 삭제
    assert await membership.list_dependencies(cid) == []
    with pytest.raises(CustomException) as e:
        await DeploymentStateMachine(db, ctx).get_deployment(cid, setup["B"])
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"
    with pytest.raises(CustomException) as e:
        await TaskStore(db, ctx).list_tasks(cid, setup["B"])
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"

    # 서비스 정의는 남아 있고 다시 추가하면 not_ready 로 시작
    await membership.add_service_to_cycle(cid, setup["B"])
    assert (await DeploymentStateMachine(db, ctx).get_deployment(cid, setup["B"])).state == "not_ready"
    assert await TaskStore(db, ctx).list_tasks(cid, setup["B"]) == []


@pytest.mark.asyncio
async def test_remove_non_member(db, ctx, setup):
    with pytest.raises(CustomException) as e:
        await CycleMembership(db, ctx).remove_service_from_cycle(setup["cycle"], setup["A"])
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"


@pytest.mark.asyncio
async def test_copy_dependencies_from_other_cycle(db, ctx, setup):
    c1 = setup["cycle"]
    membership = CycleMembership(db, ctx)
    for name in ["A", "B", "C"]:
        await membership.add_service_to_cycle(c1, setup[name])
    await membership.set_dependencies(c1, setup["C"], [setup["A"], setup["B"]])

    c2 = (await CycleStore(db, ctx).create_cycle("C2")).id
    await membership.remove_service_from_cycle(c2, setup["B"])
    await membership.set_dependencies(c2, setup["C"], [])
    assert await membership.list_dependencies(c2, setup["C"]) == []

    edges = await membership.copy_dependencies(setup["C"], c1, c2)
    # C2 에 없는 B 는 건너뜀
    assert [e.depends_on_service_id for e in edges] == [setup["A"]]


@pytest.mark.asyncio
async def test_copy_services_between_cycles(db, ctx, setup):
    store = CycleStore(db, ctx)
    c1 = setup["cycle"]
    membership = CycleMembership(db, ctx)
    await membership.add_service_to_cycle(c1, setup["A"])
    await membership.add_service_to_cycle(c1, setup["B"])
    await membership.set_dependencies(c1, setup["B"], [setup["A"]])

    c2 = (await store.create_cycle("C2")).id
    for sid in [setup["A"], setup["B"]]:
        await membership.remove_service_from_cycle(c2, sid)
    await membership.add_service_to_cycle(c2, setup["D"])

    added = await membership.copy_services(c1, c2)
    assert sorted(added) == sorted([setup["A"], setup["B"]])
    names = [s["name"] for s in await membership.list_cycle_services(c2)]
    assert names == ["A", "B", "D"]
    edges = await membership.list_dependencies(c2)
    assert [(e.service_id, e.depends_on_service_id) for e in edges] == [(setup["B"], setup["A"])]

    # 이미 있는 멤버는 건너뜀
    assert await membership.copy_services(c1, c2) == []
