#!/usr/bin/env python3
"""
Scheduled sweep: one episode per eligible user.

Users are processed one after another under a single batch ceiling; each
user's outcome is recorded independently so one failure never stops the
sweep. Run directly (e.g. from cron): python batch_runner.py
"""

import sys
import time

from db import session_scope
from episode_orchestrator import get_default_orchestrator
from errors import BriefcastError, ConcurrencyConflict, LimitExceeded, SelectionEmpty
from signal_selector import eligible_user_ids

BATCH_CEILING_SECONDS = 600

# Outcomes that mean "nothing to do for this user right now"
SKIP_ERRORS = (SelectionEmpty, LimitExceeded, ConcurrencyConflict)


def process_all_eligible_users(orchestrator=None, since=None, batch_ceiling=BATCH_CEILING_SECONDS,
                               clock=time.monotonic):
    """Generate episodes for every user with eligible signals.

    Returns {processed, succeeded, errors, details}; `details` has one entry
    per eligible user, including those the ceiling prevented from running.
    """
    orchestrator = orchestrator or get_default_orchestrator()
    deadline = clock() + batch_ceiling

    with session_scope(orchestrator.session_factory) as session:
        user_ids = eligible_user_ids(session, since)

    print(f"📋 {len(user_ids)} users with eligible signals")
    results = {'processed': 0, 'succeeded': 0, 'errors': [], 'details': []}

    for user_id in user_ids:
        remaining = deadline - clock()
        if remaining <= 0:
            print(f"  ⏱️  Batch ceiling reached, {user_id} not processed")
            results['errors'].append(f"{user_id}: batch ceiling reached before processing")
            results['details'].append({'user_id': user_id, 'status': 'timed_out'})
            continue

        results['processed'] += 1
        try:
            episode_id = orchestrator.generate_episode(user_id, since=since, budget_seconds=remaining)
        except SKIP_ERRORS as e:
            print(f"  ⏭️  Skipped {user_id}: {e}")
            results['details'].append({'user_id': user_id, 'status': 'skipped', 'reason': e.kind})
        except BriefcastError as e:
            results['errors'].append(f"{user_id}: {e}")
            results['details'].append({'user_id': user_id, 'status': 'failed', 'error': e.kind, 'message': str(e)})
        except Exception as e:
            print(f"  ❌ Unexpected error for {user_id}: {e}")
            results['errors'].append(f"{user_id}: {e}")
            results['details'].append({'user_id': user_id, 'status': 'failed', 'error': 'unexpected',
                                       'message': str(e)})
        else:
            results['succeeded'] += 1
            results['details'].append({'user_id': user_id, 'status': 'success', 'episode_id': episode_id})

    return results


def main():
    print("🎙️ Starting scheduled episode sweep...")
    print("=" * 60)

    results = process_all_eligible_users()

    print("=" * 60)
    print(f"✅ Processed {results['processed']} users, {results['succeeded']} episodes generated")
    if results['errors']:
        print(f"\n ERRORS ({len(results['errors'])}):")
        for e in results['errors']:
            print(f"  - {e}")

    return 0 if not results['errors'] else 1


if __name__ == "__main__":
    sys.exit(main())
