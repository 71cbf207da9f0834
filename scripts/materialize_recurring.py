#!/usr/bin/env python3
"""Materialize missing instances of recurring tasks.

Intended to be run from cron or a job scheduler.

Usage:
  python scripts/materialize_recurring.py
  python scripts/materialize_recurring.py --parent 12 --max 20
  python scripts/materialize_recurring.py --parent 12 --dry-run
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is on sys.path when running the script directly
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from recurtask import config
from recurtask.db import init_db
from recurtask.instances import (
    create_instances_for_all,
    create_recurring_instances,
    generate_recurring_instances,
    get_task,
)
from recurtask.recurrence import describe_rrule
from recurtask.utils import ensure_utc, now_utc


async def main(args):
    await init_db()
    if args.dry_run:
        if args.parent is None:
            print('--dry-run needs --parent')
            return 2
        task = await get_task(args.parent)
        if task is None or not task.recurrence_rule:
            print(f'task {args.parent} does not exist or does not recur')
            return 1
        start = ensure_utc(task.due_date) or now_utc()
        occurrences = await generate_recurring_instances(task.id, start)
        print(f'task {task.id}: {describe_rrule(task.recurrence_rule, task.due_date)}')
        print(f'{len(occurrences)} occurrences in window (first {args.max} shown):')
        for occ in occurrences[:args.max]:
            print(f'  #{occ.index} due={occ.due_date.isoformat()} start={occ.start_date.isoformat() if occ.start_date else "-"}')
        return 0

    if args.parent is not None:
        created = await create_recurring_instances(args.parent, args.max)
        print(f'task {args.parent}: created {created} instances')
        return 0

    results = await create_instances_for_all(args.max)
    total = sum(results.values())
    for pid, created in results.items():
        if created:
            print(f'task {pid}: created {created} instances')
    print(f'{len(results)} recurring tasks processed, {total} instances created')
    return 0


if __name__ == '__main__':
    p = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument('--parent', type=int, help='only this recurring task id')
    p.add_argument('--max', type=int, default=config.DEFAULT_MAX_INSTANCES, help='max instances per task')
    p.add_argument('--dry-run', action='store_true', help='list occurrences without creating anything')
    p.add_argument('-v', '--verbose', action='store_true')
    args = p.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s %(levelname)s:%(name)s: %(message)s')
    sys.exit(asyncio.run(main(args)))
