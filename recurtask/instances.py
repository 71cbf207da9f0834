"""Recurring task instance generation and materialization.

A recurring definition is a ``Task`` row carrying an RRULE. Its instances
are ordinary ``Task`` rows pointing back at it. Generation expands the rule
over a bounded window; materialization inserts the occurrences that are not
yet realized as live instances.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlmodel import select

from . import config
from .db import async_session
from .errors import RecurrenceValidationError, TaskNotFoundError
from .models import RecurrenceUpdate, Task, TaskCreate, TaskStatus
from .recurrence import occurrences_between, parse_rrule, validate_rrule
from .utils import canonical_timestamp, ensure_utc, format_utc, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Occurrence:
    index: int
    due_date: datetime
    start_date: datetime | None = None

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'due_date': format_utc(self.due_date),
            'start_date': format_utc(self.start_date),
        }


def expand_occurrences(parent: Task, window_start: datetime,
                       window_end: datetime | None = None) -> list[Occurrence]:
    """Expand an already-loaded definition into occurrences within a window.

    Without `window_end` the window runs to the stored recurrence end date,
    or ``DEFAULT_GENERATION_WINDOW_DAYS`` from now when there is none. The
    stored end date always caps the result, whatever `window_end` says.
    """
    if not parent.recurrence_rule:
        return []
    due = ensure_utc(parent.due_date)
    start = ensure_utc(parent.start_date)
    until = ensure_utc(parent.recurrence_end_at)
    if window_end is None:
        window_end = until or now_utc() + timedelta(days=config.DEFAULT_GENERATION_WINDOW_DAYS)

    parsed = parse_rrule(parent.recurrence_rule, due or now_utc())
    pairs = occurrences_between(parsed, window_start, window_end)
    if until is not None:
        pairs = [(idx, dt) for idx, dt in pairs if dt <= until]

    duration = due - start if due and start and due > start else None
    return [
        Occurrence(index=idx, due_date=dt, start_date=dt - duration if duration else None)
        for idx, dt in pairs
    ]


async def get_task(task_id: int) -> Task | None:
    async with async_session() as sess:
        return await sess.get(Task, task_id)


async def generate_recurring_instances(parent_id: int, window_start: datetime,
                                       window_end: datetime | None = None) -> list[Occurrence]:
    """Compute the occurrences of a recurring task without persisting anything.

    Returns an empty list when the task does not exist or does not recur.
    Expansion errors point at a corrupted rule; they are logged and re-raised.
    """
    try:
        parent = await get_task(parent_id)
        if parent is None or not parent.recurrence_rule:
            return []
        return expand_occurrences(parent, window_start, window_end)
    except Exception:
        logger.exception('failed to generate recurring instances parent_task_id=%s', parent_id)
        raise


def _instance_row(parent: Task, occ: Occurrence, created_at: datetime) -> dict:
    return {
        'title': parent.title,
        'description': parent.description,
        # instances always start out as not started, whatever the parent's state
        'status': TaskStatus.TODO,
        'priority': parent.priority,
        'dashboard_id': parent.dashboard_id,
        'business_id': parent.business_id,
        'created_by_id': parent.created_by_id,
        'project_id': parent.project_id,
        'category': parent.category,
        'tags': list(parent.tags or []),
        'time_estimate': parent.time_estimate,
        'due_date': occ.due_date,
        'start_date': occ.start_date,
        'parent_recurring_task_id': parent.id,
        'occurrence_index': occ.index,
        'created_at': created_at,
        'modified_at': created_at,
    }


async def insert_instances(sess, rows: list[dict]) -> int:
    """Bulk insert instance rows, skipping rows that hit a live-instance
    unique index. Returns the number of rows actually inserted."""
    if not rows:
        return 0
    if sess.bind.dialect.name == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    stmt = insert(Task).values(rows).on_conflict_do_nothing()
    res = await sess.exec(stmt)
    return res.rowcount


async def create_recurring_instances(parent_id: int, max_instances: int | None = None) -> int:
    """Materialize up to `max_instances` missing instances of a recurring task.

    An occurrence counts as already realized when a live instance of the
    parent has the same canonical UTC due date. The read-exclude-insert
    sequence runs in one transaction and the insert ignores unique-index
    conflicts, so a concurrent run for the same parent cannot produce
    duplicates. Returns the number of instances created.
    """
    if max_instances is None:
        max_instances = config.DEFAULT_MAX_INSTANCES
    try:
        async with async_session() as sess:
            async with sess.begin():
                parent = await sess.get(Task, parent_id)
                if parent is None or not parent.recurrence_rule:
                    return 0

                res = await sess.exec(
                    select(Task.due_date)
                    .where(Task.parent_recurring_task_id == parent_id)
                    .where(Task.trashed_at.is_(None))
                )
                existing_dates = {canonical_timestamp(d) for d in res.all() if d is not None}

                window_start = ensure_utc(parent.due_date) or now_utc().replace(microsecond=0)
                occurrences = expand_occurrences(parent, window_start, ensure_utc(parent.recurrence_end_at))
                fresh = [
                    occ for occ in occurrences
                    if canonical_timestamp(occ.due_date) not in existing_dates
                ][:max(max_instances, 0)]
                if not fresh:
                    return 0

                created_at = now_utc()
                created = await insert_instances(sess, [_instance_row(parent, occ, created_at) for occ in fresh])
    except Exception:
        logger.exception('failed to create recurring instances parent_task_id=%s', parent_id)
        raise

    logger.info('recurring task instances created parent_task_id=%s count=%d', parent_id, created)
    return created


async def _materialize_initial(task_id: int) -> int:
    """Materialize the first batch for a new or changed definition.

    The task itself is already saved at this point, so a failure here is
    logged and reported as zero instances instead of failing the caller.
    """
    if not config.ENABLE_INITIAL_MATERIALIZATION:
        return 0
    try:
        return await create_recurring_instances(task_id, config.INITIAL_INSTANCE_COUNT)
    except Exception:
        logger.exception('failed to generate initial recurring instances task_id=%s', task_id)
        return 0


def _clean_rule(rule: str | None) -> str | None:
    if rule is None:
        return None
    return rule.strip() or None


def _check_rule(rule: str | None, due_date: datetime | None) -> None:
    if not rule:
        return
    if due_date is None:
        raise RecurrenceValidationError('due date is required for recurring tasks')
    if not validate_rrule(rule, due_date):
        raise RecurrenceValidationError('invalid recurrence rule (RRULE)')


async def create_recurring_task(data: TaskCreate) -> Task:
    """Create a task definition and materialize its first instances."""
    if not data.title or not data.title.strip():
        raise RecurrenceValidationError('title is required')
    rule = _clean_rule(data.recurrence_rule)
    due_date = ensure_utc(data.due_date)
    _check_rule(rule, due_date)

    task = Task(
        title=data.title.strip(),
        description=data.description,
        status=data.status,
        priority=data.priority,
        dashboard_id=data.dashboard_id,
        business_id=data.business_id,
        created_by_id=data.created_by_id,
        project_id=data.project_id,
        category=data.category,
        tags=list(data.tags or []),
        time_estimate=data.time_estimate,
        due_date=due_date,
        start_date=ensure_utc(data.start_date),
        recurrence_rule=rule,
        recurrence_end_at=ensure_utc(data.recurrence_end_at),
    )
    async with async_session() as sess:
        sess.add(task)
        await sess.commit()
        await sess.refresh(task)
    logger.info('task created task_id=%s recurring=%s', task.id, bool(rule))

    if rule:
        await _materialize_initial(task.id)
    return task


async def update_recurrence(task_id: int, update: RecurrenceUpdate) -> Task:
    """Change a definition's rule and/or end date.

    Only fields present in ``update.model_fields_set`` are applied. When the
    rule or end date actually changes, missing instances are topped up.
    Instances that already exist are left alone.
    """
    fields = update.model_fields_set
    async with async_session() as sess:
        task = await sess.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        rule_changed = False
        end_changed = False
        if 'recurrence_rule' in fields:
            new_rule = _clean_rule(update.recurrence_rule)
            if new_rule and task.parent_recurring_task_id is not None:
                raise RecurrenceValidationError('a recurring instance cannot carry its own recurrence rule')
            _check_rule(new_rule, ensure_utc(task.due_date))
            rule_changed = new_rule != (task.recurrence_rule or None)
            task.recurrence_rule = new_rule
        if 'recurrence_end_at' in fields:
            new_end = ensure_utc(update.recurrence_end_at)
            end_changed = canonical_timestamp(new_end) != canonical_timestamp(task.recurrence_end_at)
            task.recurrence_end_at = new_end

        if rule_changed or end_changed:
            task.modified_at = now_utc()
            sess.add(task)
            await sess.commit()
            await sess.refresh(task)
            logger.info('recurrence updated task_id=%s rule_changed=%s end_changed=%s',
                        task_id, rule_changed, end_changed)

    if (rule_changed or end_changed) and task.recurrence_rule:
        await _materialize_initial(task.id)
    return task


async def list_instances(parent_id: int) -> list[Task]:
    """Live instances of a recurring task ordered by due date."""
    async with async_session() as sess:
        res = await sess.exec(
            select(Task)
            .where(Task.parent_recurring_task_id == parent_id)
            .where(Task.trashed_at.is_(None))
            .order_by(Task.due_date)
        )
        return list(res.all())


async def create_instances_for_all(max_instances: int | None = None) -> dict[int, int]:
    """Run the materializer for every live recurring definition.

    A failing parent does not stop the run; it is missing from the result.
    """
    async with async_session() as sess:
        res = await sess.exec(
            select(Task.id)
            .where(Task.recurrence_rule.is_not(None))
            .where(Task.parent_recurring_task_id.is_(None))
            .where(Task.trashed_at.is_(None))
            .order_by(Task.id)
        )
        parent_ids = list(res.all())

    results: dict[int, int] = {}
    for pid in parent_ids:
        try:
            results[pid] = await create_recurring_instances(pid, max_instances)
        except Exception:
            # already logged with its traceback by create_recurring_instances
            logger.warning('skipping parent_task_id=%s after materialization failure', pid)
    return results
