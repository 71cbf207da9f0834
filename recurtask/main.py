from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import sys

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from .db import init_db
from .errors import RecurrenceValidationError, TaskNotFoundError
from .instances import (
    create_recurring_instances,
    create_recurring_task,
    generate_recurring_instances,
    get_task,
    list_instances,
    update_recurrence,
)
from .models import RecurrenceUpdate, Task, TaskCreate
from .recurrence import describe_rrule, validate_rrule
from .utils import format_utc, now_utc

logger = logging.getLogger(__name__)
# Ensure INFO logs reach stdout even when the root logger is left at WARNING
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info('recurring task service started')
    yield


app = FastAPI(lifespan=lifespan)


class RuleRequest(BaseModel):
    rule: Optional[str] = None
    anchor: Optional[datetime] = None


def _task_to_dict(task: Task) -> dict:
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'status': task.status,
        'priority': task.priority,
        'dashboard_id': task.dashboard_id,
        'business_id': task.business_id,
        'created_by_id': task.created_by_id,
        'project_id': task.project_id,
        'category': task.category,
        'tags': list(task.tags or []),
        'time_estimate': task.time_estimate,
        'due_date': format_utc(task.due_date),
        'start_date': format_utc(task.start_date),
        'recurrence_rule': task.recurrence_rule,
        'recurrence_end_at': format_utc(task.recurrence_end_at),
        'recurrence_description': describe_rrule(task.recurrence_rule, task.due_date) if task.recurrence_rule else None,
        'parent_recurring_task_id': task.parent_recurring_task_id,
        'occurrence_index': task.occurrence_index,
        'created_at': format_utc(task.created_at),
        'modified_at': format_utc(task.modified_at),
    }


@app.post('/recurrence/validate')
async def recurrence_validate(req: RuleRequest):
    return {'valid': validate_rrule(req.rule, req.anchor)}


@app.post('/recurrence/describe')
async def recurrence_describe(req: RuleRequest):
    return {'description': describe_rrule(req.rule, req.anchor)}


@app.post('/tasks', status_code=201)
async def create_task(req: TaskCreate):
    try:
        task = await create_recurring_task(req)
    except RecurrenceValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _task_to_dict(task)


@app.get('/tasks/{task_id}')
async def read_task(task_id: int):
    task = await get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail='task not found')
    return _task_to_dict(task)


@app.put('/tasks/{task_id}/recurrence')
async def change_recurrence(task_id: int, req: RecurrenceUpdate):
    try:
        task = await update_recurrence(task_id, req)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail='task not found')
    except RecurrenceValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _task_to_dict(task)


@app.get('/tasks/{task_id}/occurrences')
async def preview_occurrences(task_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None):
    """Expand a recurring task over [start, end] without creating anything.

    `start` defaults to now; `end` defaults to the task's recurrence end date
    or one year ahead.
    """
    if start is None:
        start = now_utc()
    try:
        occurrences = await generate_recurring_instances(task_id, start, end)
    except (ValueError, TypeError):
        # malformed stored rule, already logged by generate_recurring_instances
        raise HTTPException(status_code=422, detail='recurrence rule could not be expanded')
    return {'occurrences': [o.to_dict() for o in occurrences]}


@app.post('/tasks/{task_id}/instances')
async def materialize_instances(task_id: int, max_instances: Optional[int] = Query(default=None, ge=0)):
    created = await create_recurring_instances(task_id, max_instances)
    return {'created': created}


@app.get('/tasks/{task_id}/instances')
async def read_instances(task_id: int):
    rows = await list_instances(task_id)
    return {'instances': [_task_to_dict(t) for t in rows]}
