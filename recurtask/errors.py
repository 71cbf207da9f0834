class RecurrenceError(Exception):
    """Base class for errors raised by the recurring task service."""


class RecurrenceValidationError(RecurrenceError, ValueError):
    """A task or recurrence payload was rejected before touching the database."""


class TaskNotFoundError(RecurrenceError, LookupError):
    def __init__(self, task_id):
        super().__init__(f'task {task_id} not found')
        self.task_id = task_id
