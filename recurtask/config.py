"""Runtime configuration for the recurring task service.

Values are read from environment variables so they can be tuned per
deployment without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# When neither an explicit window end nor a stored recurrence end date is
# available, occurrences are generated this many days ahead of now.
DEFAULT_GENERATION_WINDOW_DAYS = _int_env('DEFAULT_GENERATION_WINDOW_DAYS', 365)

# Batch size used by create_recurring_instances when the caller does not pass one.
DEFAULT_MAX_INSTANCES = _int_env('DEFAULT_MAX_INSTANCES', 100)

# Hard ceiling on occurrences produced by a single expansion, applied on top
# of the date window.
MAX_OCCURRENCES = _int_env('MAX_OCCURRENCES', 1000)

# Number of instances materialized right after a recurring task is created
# or its recurrence changes.
INITIAL_INSTANCE_COUNT = _int_env('INITIAL_INSTANCE_COUNT', 10)

# Set ENABLE_INITIAL_MATERIALIZATION=0 to only materialize instances from the
# batch job (scripts/materialize_recurring.py) or the explicit API call.
ENABLE_INITIAL_MATERIALIZATION = _trueish(os.getenv('ENABLE_INITIAL_MATERIALIZATION', '1'))

# Optional local overrides: define variables in recurtask/local_config.py.
# Keep that file out of version control.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
