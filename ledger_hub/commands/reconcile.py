import sys
from typing import Optional

from sqlalchemy.orm import Session

from ledger_hub import database
from ledger_hub.reconciliation import generate_reconciliation_csv


def reconcile(output_path: str = "reconciliation.csv", db: Optional[Session] = None) -> int:
    """Write the balance mismatch report; exit status 1 when any wallet disagrees with its history."""
    owns_session = db is None
    if owns_session:
        database.get_engine()
        db = database.SessionLocal()
    try:
        csv_text, mismatch_count = generate_reconciliation_csv(db)
    finally:
        if owns_session:
            db.close()
    with open(output_path, "w", newline="") as f:
        f.write(csv_text)
    return 1 if mismatch_count else 0

if __name__ == "__main__":
    exit_code = reconcile(*sys.argv[1:2])
    raise SystemExit(exit_code)
