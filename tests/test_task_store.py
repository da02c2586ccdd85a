import pytest
import pytest_asyncio
from cycle_store import CycleStore
from cycle_membership import CycleMembership
from service_pool import ServicePool
from task_store import TaskStore
from utils.exceptions import CustomException


@pytest_asyncio.fixture
async def pair(db, ctx):
    sid = (await ServicePool(db, ctx).create_service("api")).id
    cid = (await CycleStore(db, ctx).create_cycle("C1")).id
    await CycleMembership(db, ctx).add_service_to_cycle(cid, sid)
    return cid, sid


@pytest.mark.asyncio
async def test_tasks_keep_creation_order(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    for text in ["backup db", "**deploy** api", "verify"]:
        await store.add_task(cid, sid, text)
    tasks = await store.list_tasks(cid, sid)
    assert [t.text for t in tasks] == ["backup db", "**deploy** api", "verify"]
    assert all(t.completed is False for t in tasks)


@pytest.mark.asyncio
async def test_update_and_complete_task(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    tid = (await store.add_task(cid, sid, "draft")).id
    task = await store.update_task_text(cid, sid, tid, "  final  ")
    assert task.text == "final"
    task = await store.set_task_completion(cid, sid, tid, True)
    assert task.completed is True
    task = await store.set_task_completion(cid, sid, tid, False)
    assert task.completed is False


@pytest.mark.asyncio
async def test_task_validation(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    with pytest.raises(CustomException) as e:
        await store.add_task(cid, sid, "   ")
    assert e.value.code == "TASK_TEXT_REQUIRED"
    tid = (await store.add_task(cid, sid, "keep")).id
    with pytest.raises(CustomException) as e:
        await store.update_task_text(cid, sid, tid, "")
    assert e.value.code == "TASK_TEXT_REQUIRED"
    assert [t.text for t in await store.list_tasks(cid, sid)] == ["keep"]


@pytest.mark.asyncio
async def test_remove_task(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    first = (await store.add_task(cid, sid, "one")).id
    await store.add_task(cid, sid, "two")
    await store.remove_task(cid, sid, first)
    assert [t.text for t in await store.list_tasks(cid, sid)] == ["two"]
    with pytest.raises(CustomException) as e:
        await store.remove_task(cid, sid, first)
    assert e.value.code == "TASK_NOT_FOUND"


@pytest.mark.asyncio
async def test_tasks_require_membership(db, ctx, pair):
    cid, _ = pair
    other = (await ServicePool(db, ctx).create_service("worker")).id
    with pytest.raises(CustomException) as e:
        await TaskStore(db, ctx).add_task(cid, other, "nope")
    assert e.value.code == "SERVICE_NOT_IN_CYCLE"


@pytest.mark.asyncio
async def test_task_from_other_pair_not_found(db, ctx, pair):
    cid, sid = pair
    worker = (await ServicePool(db, ctx).create_service("worker")).id
    await CycleMembership(db, ctx).add_service_to_cycle(cid, worker)
    store = TaskStore(db, ctx)
    tid = (await store.add_task(cid, sid, "api only")).id
    with pytest.raises(CustomException) as e:
        await store.set_task_completion(cid, worker, tid, True)
    assert e.value.code == "TASK_NOT_FOUND"


@pytest.mark.asyncio
async def test_copy_tasks_appends_incomplete_copies(db, ctx, pair):
    c1, sid = pair
    store = TaskStore(db, ctx)
    done = (await store.add_task(c1, sid, "migrate")).id
    await store.set_task_completion(c1, sid, done, True)
    await store.add_task(c1, sid, "announce")

    c2 = (await CycleStore(db, ctx).create_cycle("C2")).id
    # 생성 시 이미 복사됨. 한 번 더 복사하면 뒤에 추가
    copied = await store.copy_tasks(sid, c1, c2)
    assert [t.text for t in copied] == ["migrate", "announce"]
    texts = [t.text for t in await store.list_tasks(c2, sid)]
    assert texts == ["migrate", "announce", "migrate", "announce"]
    assert not any(t.completed for t in await store.list_tasks(c2, sid))
    # 원본은 그대로
    assert [t.completed for t in await store.list_tasks(c1, sid)] == [True, False]


@pytest.mark.asyncio
async def test_tasks_are_tenant_scoped(db, ctx, other_ctx, pair):
    cid, sid = pair
    with pytest.raises(CustomException) as e:
        await TaskStore(db, other_ctx).list_tasks(cid, sid)
    assert e.value.code == "CYCLE_NOT_FOUND"


@pytest.mark.asyncio
async def test_update_text_and_completion_together(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    tid = (await store.add_task(cid, sid, "draft")).id
    task = await store.update_task(cid, sid, tid, text="final", completed=True)
    assert (task.text, task.completed) == ("final", True)

    with pytest.raises(CustomException) as e:
        await store.update_task(cid, sid, tid)
    assert e.value.code == "TASK_UPDATE_EMPTY"
    assert e.value.status_code == 400


@pytest.mark.asyncio
async def test_combined_update_rejected_as_a_whole(db, ctx, pair):
    cid, sid = pair
    store = TaskStore(db, ctx)
    tid = (await store.add_task(cid, sid, "draft")).id
    cycles = CycleStore(db, ctx)
    await cycles.activate_cycle(cid)
    await cycles.complete_active_cycle()
    with pytest.raises(CustomException) as e:
        await store.update_task(cid, sid, tid, text="changed", completed=True)
    assert e.value.code == "CANNOT_UPDATE_COMPLETED_CYCLE"
    tasks = await store.list_tasks(cid, sid)
    assert [(t.text, t.completed) for t in tasks] == [("draft", False)]
