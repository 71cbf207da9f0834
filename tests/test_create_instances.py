import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from recurtask import instances as instances_mod
from recurtask.db import async_session
from recurtask.instances import (
    _instance_row,
    create_instances_for_all,
    create_recurring_instances,
    expand_occurrences,
    insert_instances,
    list_instances,
)
from recurtask.models import Task, TaskPriority, TaskStatus
from recurtask.utils import ensure_utc, now_utc

from conftest import utc


async def _instances(parent_id):
    return await list_instances(parent_id)


@pytest.mark.asyncio
async def test_missing_parent_creates_nothing(ensure_db):
    assert await create_recurring_instances(424242) == 0


@pytest.mark.asyncio
async def test_non_recurring_parent_creates_nothing(make_task):
    parent = await make_task(due_date=utc(2025, 1, 1))
    assert await create_recurring_instances(parent.id) == 0
    assert await _instances(parent.id) == []


@pytest.mark.asyncio
async def test_instances_copy_parent_fields(make_task):
    parent = await make_task(
        title='Standup notes',
        description='write them up',
        status=TaskStatus.DONE,
        priority=TaskPriority.HIGH,
        business_id='biz-9',
        project_id='proj-3',
        category='ops',
        tags=['team', 'daily'],
        time_estimate=15,
        recurrence_rule='FREQ=WEEKLY;BYDAY=MO,WE',
        due_date=utc(2025, 9, 1, 9),
        recurrence_end_at=utc(2025, 9, 21),
    )
    created = await create_recurring_instances(parent.id)
    assert created == 6

    rows = await _instances(parent.id)
    assert [ensure_utc(r.due_date) for r in rows] == [
        utc(2025, 9, 1, 9), utc(2025, 9, 3, 9), utc(2025, 9, 8, 9),
        utc(2025, 9, 10, 9), utc(2025, 9, 15, 9), utc(2025, 9, 17, 9),
    ]
    for idx, row in enumerate(rows):
        assert row.parent_recurring_task_id == parent.id
        assert row.occurrence_index == idx
        # instances start fresh even though the parent is done
        assert row.status == TaskStatus.TODO
        assert row.title == 'Standup notes'
        assert row.description == 'write them up'
        assert row.priority == TaskPriority.HIGH
        assert row.dashboard_id == 'dash-1'
        assert row.business_id == 'biz-9'
        assert row.created_by_id == 'user-1'
        assert row.project_id == 'proj-3'
        assert row.category == 'ops'
        assert row.tags == ['team', 'daily']
        assert row.time_estimate == 15
        assert row.recurrence_rule is None
        assert row.start_date is None


@pytest.mark.asyncio
async def test_instances_keep_parent_duration(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY;COUNT=3',
        start_date=utc(2025, 2, 1, 8),
        due_date=utc(2025, 2, 1, 10),
    )
    assert await create_recurring_instances(parent.id) == 3
    for row in await _instances(parent.id):
        assert ensure_utc(row.due_date) - ensure_utc(row.start_date) == utc(2025, 2, 1, 10) - utc(2025, 2, 1, 8)


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY',
        due_date=utc(2025, 1, 1, 9),
        recurrence_end_at=utc(2025, 1, 20, 9),
    )
    assert await create_recurring_instances(parent.id) == 20
    assert await create_recurring_instances(parent.id) == 0
    assert len(await _instances(parent.id)) == 20


@pytest.mark.asyncio
async def test_batch_cap(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY',
        due_date=utc(2025, 1, 1, 9),
        recurrence_end_at=utc(2025, 2, 19, 9),
    )
    assert len(expand_occurrences(parent, utc(2025, 1, 1))) == 50

    assert await create_recurring_instances(parent.id, 5) == 5
    rows = await _instances(parent.id)
    assert [r.occurrence_index for r in rows] == [0, 1, 2, 3, 4]

    # the next batch continues where the previous one stopped
    assert await create_recurring_instances(parent.id, 5) == 5
    rows = await _instances(parent.id)
    assert [r.occurrence_index for r in rows] == list(range(10))


@pytest.mark.asyncio
async def test_default_batch_size(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY',
        due_date=utc(2025, 1, 1),
        recurrence_end_at=utc(2025, 12, 31),
    )
    assert await create_recurring_instances(parent.id) == 100


@pytest.mark.asyncio
async def test_existing_instance_with_same_due_date_is_skipped(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY;COUNT=3',
        due_date=utc(2025, 4, 1, 12),
    )
    # created by hand, without an occurrence index
    await make_task(parent_recurring_task_id=parent.id, due_date=utc(2025, 4, 2, 12))
    assert await create_recurring_instances(parent.id) == 2
    assert len(await _instances(parent.id)) == 3


@pytest.mark.asyncio
async def test_shifted_anchor_materializes_the_new_times(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=DAILY;COUNT=5',
        due_date=utc(2025, 6, 1, 9),
    )
    assert await create_recurring_instances(parent.id) == 5

    # move every occurrence by five minutes
    async with async_session() as sess:
        row = await sess.get(Task, parent.id)
        row.due_date = utc(2025, 6, 1, 9, 5)
        sess.add(row)
        await sess.commit()

    # the due date is the identity of an occurrence, so the moved ones are new
    assert await create_recurring_instances(parent.id) == 5
    rows = await _instances(parent.id)
    assert len(rows) == 10
    assert utc(2025, 6, 3, 9, 5) in [ensure_utc(r.due_date) for r in rows]
    assert await create_recurring_instances(parent.id) == 0


@pytest.mark.asyncio
async def test_changed_rule_fills_every_new_date(make_task):
    parent = await make_task(recurrence_rule='FREQ=DAILY', due_date=utc(2025, 1, 1, 9), recurrence_end_at=utc(2025, 1, 11, 9))
    assert await create_recurring_instances(parent.id, 3) == 3

    async with async_session() as sess:
        row = await sess.get(Task, parent.id)
        row.recurrence_rule = 'FREQ=DAILY;INTERVAL=2'
        sess.add(row)
        await sess.commit()

    # Jan 1 and Jan 3 already exist; 5, 7, 9 and 11 are missing
    assert await create_recurring_instances(parent.id) == 4
    days = [ensure_utc(r.due_date).day for r in await _instances(parent.id)]
    assert days == [1, 2, 3, 5, 7, 9, 11]


@pytest.mark.asyncio
async def test_trashed_instance_is_materialized_again(make_task):
    parent = await make_task(
        recurrence_rule='FREQ=WEEKLY;COUNT=3',
        due_date=utc(2025, 3, 3, 9),
    )
    assert await create_recurring_instances(parent.id) == 3

    rows = await _instances(parent.id)
    async with async_session() as sess:
        victim = await sess.get(Task, rows[1].id)
        victim.trashed_at = now_utc()
        sess.add(victim)
        await sess.commit()

    assert len(await _instances(parent.id)) == 2
    assert await create_recurring_instances(parent.id) == 1
    rows = await _instances(parent.id)
    assert [r.occurrence_index for r in rows] == [0, 1, 2]
    assert ensure_utc(rows[1].due_date) == utc(2025, 3, 10, 9)


@pytest.mark.asyncio
async def test_insert_skips_rows_that_already_exist(make_task):
    parent = await make_task(recurrence_rule='FREQ=DAILY;COUNT=4', due_date=utc(2025, 7, 1, 9))
    occurrences = expand_occurrences(parent, utc(2025, 7, 1))
    rows = [_instance_row(parent, occ, now_utc()) for occ in occurrences]

    async with async_session() as sess:
        async with sess.begin():
            assert await insert_instances(sess, rows[:2]) == 2
    # a concurrent run that computed its exclusions before the first insert
    async with async_session() as sess:
        async with sess.begin():
            assert await insert_instances(sess, rows) == 2

    assert len(await _instances(parent.id)) == 4


@pytest.mark.asyncio
async def test_insert_nothing(ensure_db):
    async with async_session() as sess:
        assert await insert_instances(sess, []) == 0


@pytest.mark.asyncio
async def test_persistence_failure_is_logged_and_raised(make_task, monkeypatch, caplog):
    parent = await make_task(recurrence_rule='FREQ=DAILY;COUNT=2', due_date=utc(2025, 1, 1))

    async def _broken_insert(sess, rows):
        raise OperationalError('INSERT', {}, Exception('database is locked'))

    monkeypatch.setattr(instances_mod, 'insert_instances', _broken_insert)
    with pytest.raises(OperationalError):
        await create_recurring_instances(parent.id)
    assert any('failed to create recurring instances' in r.getMessage() for r in caplog.records)
    assert await _instances(parent.id) == []


@pytest.mark.asyncio
async def test_success_is_logged(make_task, caplog):
    import logging
    caplog.set_level(logging.INFO, logger='recurtask.instances')
    parent = await make_task(recurrence_rule='FREQ=DAILY;COUNT=2', due_date=utc(2025, 1, 1))
    await create_recurring_instances(parent.id)
    assert any(
        f'parent_task_id={parent.id} count=2' in r.getMessage() for r in caplog.records
    )


@pytest.mark.asyncio
async def test_create_for_all_definitions(make_task):
    daily = await make_task(recurrence_rule='FREQ=DAILY;COUNT=3', due_date=utc(2025, 1, 1))
    weekly = await make_task(recurrence_rule='FREQ=WEEKLY;COUNT=2', due_date=utc(2025, 1, 1))
    plain = await make_task(due_date=utc(2025, 1, 1))
    broken = await make_task(recurrence_rule='FREQ=DAILY;BYDAY=ZZ', due_date=utc(2025, 1, 1))
    trashed = await make_task(recurrence_rule='FREQ=DAILY;COUNT=3', due_date=utc(2025, 1, 1), trashed_at=now_utc())

    results = await create_instances_for_all()
    assert results == {daily.id: 3, weekly.id: 2}
    assert plain.id not in results
    assert broken.id not in results
    assert trashed.id not in results

    # instances are not definitions, so a second pass creates nothing new
    assert await create_instances_for_all() == {daily.id: 0, weekly.id: 0}


@pytest.mark.asyncio
async def test_instance_rows_only_reference_their_parent(make_task):
    a = await make_task(recurrence_rule='FREQ=DAILY;COUNT=2', due_date=utc(2025, 1, 1))
    b = await make_task(recurrence_rule='FREQ=DAILY;COUNT=2', due_date=utc(2025, 1, 1))
    assert await create_recurring_instances(a.id) == 2
    # same dates, different parent: no interference
    assert await create_recurring_instances(b.id) == 2
    async with async_session() as sess:
        res = await sess.exec(select(Task).where(Task.parent_recurring_task_id.is_not(None)))
        assert len(res.all()) == 4
