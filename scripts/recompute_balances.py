'''
Resyncs the cached balance of every active student against the active
school year.

Usage:
    python scripts/recompute_balances.py            # write the recomputed balances
    python scripts/recompute_balances.py --dry-run  # only report the drift
'''
import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

# --- Path Setup ---
# This file is assumed to be in <project_root>/scripts/recompute_balances.py
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Settings need the environment before the package is imported
load_dotenv(PROJECT_ROOT / ".env")

from tuition_ledger.common.exceptions import LedgerError
from tuition_ledger.common.logger import log
from tuition_ledger.database import engine as db_engine
from tuition_ledger.database.repository import LedgerRepository
from tuition_ledger.services.payment_service import PaymentService


async def report_drift(service: PaymentService) -> int:
    """Prints every student whose cached balance differs from the ledger."""
    async with service.session_factory() as session:
        student_ids = await LedgerRepository(session).list_active_student_ids()

    drifted = 0
    for student_id in student_ids:
        try:
            ledger = await service.get_student_ledger(student_id)
        except LedgerError as e:
            print(f"  FAILED {student_id}: {e.message}")
            continue
        if ledger.balance_drift:
            drifted += 1
            print(f"  {ledger.student_name}: cached {ledger.cached_balance}, ledger {ledger.outstanding_total}")
    print(f"{drifted} of {len(student_ids)} active students have drifted.")
    return drifted


async def recompute_balances(dry_run: bool, database_url: str | None):
    db_engine.create_db_engine_and_session_factory(database_url)
    try:
        service = PaymentService(session_factory=db_engine.get_session_factory())
        if dry_run:
            print("--- Dry run: balances are not written ---")
            await report_drift(service)
            return

        print("--- Recomputing balances ---")
        batch = await service.resync_all_balances()
        changed = [result for result in batch.results if result.changed]
        for result in changed:
            print(f"  {result.student_id}: {result.previous_balance} -> {result.balance}")
        for failure in batch.failures:
            print(f"  FAILED {failure.student_id}: {failure.error}")
        total = len(batch.results) + len(batch.failures)
        print(f"Updated {len(changed)} of {total} active students, {len(batch.failures)} failed.")
        log.info(f"Balance recompute finished: {len(changed)} of {total} changed, {len(batch.failures)} failed.")
    finally:
        await db_engine.dispose_db_engine()


def main():
    parser = argparse.ArgumentParser(description="Recompute cached student balances.")
    parser.add_argument("--dry-run", action="store_true", help="Only report students whose balance drifted.")
    parser.add_argument("--database-url", default=None, help="Overrides the configured database URL.")
    args = parser.parse_args()
    asyncio.run(recompute_balances(args.dry_run, args.database_url))


if __name__ == "__main__":
    main()
