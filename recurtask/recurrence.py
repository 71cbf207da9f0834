"""RRULE helpers: parsing, validation, windowed expansion and display text.

Everything here is pure computation on top of ``dateutil.rrule``; nothing
touches the database. Rule strings are RFC 5545 RRULE bodies such as
``FREQ=WEEKLY;BYDAY=MO,WE`` and may carry a leading ``RRULE:`` and extra
``EXDATE:`` lines.
"""
from datetime import datetime
from itertools import islice, takewhile
import logging
import re

from dateutil import rrule as _rrule

from . import config
from .utils import canonical_timestamp, ensure_utc, now_utc

logger = logging.getLogger(__name__)

SUPPORTED_FREQ_RE = re.compile(r'FREQ=(DAILY|WEEKLY|MONTHLY|YEARLY)', re.IGNORECASE)
_EXDATE_RE = re.compile(r'EXDATE', re.IGNORECASE)

SUPPORTED_FREQS = (_rrule.DAILY, _rrule.WEEKLY, _rrule.MONTHLY, _rrule.YEARLY)

# dateutil weekday indexes: Monday == 0
WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

# freq -> (phrase for interval 1, unit for "Every N <unit>")
_FREQ_PHRASES = {
    _rrule.DAILY: ('Daily', 'days'),
    _rrule.WEEKLY: ('Weekly', 'weeks'),
    _rrule.MONTHLY: ('Monthly', 'months'),
    _rrule.YEARLY: ('Yearly', 'years'),
}

NO_RECURRENCE = 'No recurrence'
INVALID_RECURRENCE = 'Invalid recurrence rule'


def parse_rrule(rule: str, anchor: datetime | None = None):
    """Parse `rule` anchored at `anchor` (default: now, UTC).

    Returns an ``rrule`` or, when the rule carries EXDATE entries, an
    ``rruleset``. Raises whatever dateutil raises for malformed input.
    """
    dtstart = ensure_utc(anchor) if anchor is not None else now_utc()
    return _rrule.rrulestr(rule, dtstart=dtstart, forceset=bool(_EXDATE_RE.search(rule)))


def base_rule(parsed):
    """Return the underlying ``rrule`` of a parsed rule or rule set."""
    if isinstance(parsed, _rrule.rruleset):
        # rruleset keeps its RRULE components in a private list
        rules = getattr(parsed, '_rrule', None)
        if not rules:
            raise ValueError('rule set has no RRULE component')
        return rules[0]
    return parsed


def validate_rrule(rule, anchor: datetime | None = None) -> bool:
    """Return True when `rule` is a parseable RRULE with a supported frequency.

    Never raises: this is used as a form-validation predicate.
    """
    if not rule or not isinstance(rule, str):
        return False
    if not SUPPORTED_FREQ_RE.search(rule):
        return False
    try:
        parsed = parse_rrule(rule, anchor)
        if base_rule(parsed)._freq not in SUPPORTED_FREQS:
            return False
        # Some rules parse but fail on first expansion, e.g. a naive EXDATE
        # compared against an aware anchor.
        next(iter(parsed), None)
    except Exception:
        logger.debug('rejecting recurrence rule %r', rule, exc_info=True)
        return False
    return True


def describe_rrule(rule, anchor: datetime | None = None) -> str:
    """Render `rule` as a short label such as 'Weekly on Monday, Wednesday'."""
    if not rule:
        return NO_RECURRENCE
    try:
        r = base_rule(parse_rrule(rule, anchor))
        interval = r._interval or 1
        phrase = _FREQ_PHRASES.get(r._freq)
        if phrase is None:
            description = 'Recurring'
        elif interval == 1:
            description = phrase[0]
        else:
            description = f'Every {interval} {phrase[1]}'
        # _original_rule only holds what the rule spelled out, so a bare
        # FREQ=WEEKLY does not list the weekday implied by the anchor.
        weekdays = r._original_rule.get('byweekday') or ()
        if weekdays:
            description += ' on ' + ', '.join(WEEKDAY_NAMES[d.weekday] for d in weekdays)
        return description
    except Exception:
        logger.debug('could not describe recurrence rule %r', rule, exc_info=True)
        return INVALID_RECURRENCE


def occurrences_between(parsed, window_start: datetime, window_end: datetime,
                        limit: int | None = None) -> list[tuple[int, datetime]]:
    """Expand `parsed` inside the inclusive window [window_start, window_end].

    Returns ``(index, datetime)`` pairs in chronological order where index is
    the position of the occurrence in the rule's full expansion from its
    anchor. At most `limit` (default ``config.MAX_OCCURRENCES``) pairs are
    returned.

    Rule objects exposing ``xafter`` are read lazily from `window_start` and
    stop at the window end or after `limit` occurrences, whichever comes
    first, so a far-off window end costs nothing extra. Anything else is
    enumerated from the start, reading no more than `limit` occurrences, and
    filtered by the window.
    """
    if limit is None:
        limit = config.MAX_OCCURRENCES
    window_start = ensure_utc(window_start)
    window_end = ensure_utc(window_end)
    if limit <= 0 or window_end < window_start:
        return []

    if hasattr(parsed, 'xafter'):
        in_window = takewhile(lambda d: d <= window_end, parsed.xafter(window_start, inc=True))
        found = list(islice(in_window, limit))
        if not found:
            return []
        first = found[0]
        offset = sum(1 for _ in takewhile(lambda d: d < first, parsed))
        pairs = [(offset + i, dt) for i, dt in enumerate(found)]
    else:
        pairs = []
        for i, dt in enumerate(islice(iter(parsed), limit)):
            dt = ensure_utc(dt)
            if window_start <= dt <= window_end:
                pairs.append((i, dt))

    seen: set[str] = set()
    out = []
    for idx, dt in pairs:
        key = canonical_timestamp(dt)
        if key in seen:
            continue
        seen.add(key)
        out.append((idx, dt))
    return out
