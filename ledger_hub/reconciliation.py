import csv
from io import StringIO
from typing import List, Tuple

from sqlalchemy.orm import Session

from ledger_hub.helpers import format_money
from ledger_hub.logging_config import get_logger
from ledger_hub.models import Wallet
from ledger_hub.ledger import validate_wallet_balance


logger = get_logger(__name__)

CSV_HEADER = ["walletId", "accountNumber", "storedBalance", "calculatedBalance", "discrepancy"]


def generate_reconciliation_csv(db: Session) -> Tuple[str, int]:
    """
    Compare every wallet's stored balance with its transaction history and return CSV text plus mismatch count.
    """
    mismatches: List[tuple] = []
    for wallet in db.query(Wallet).order_by(Wallet.created_at, Wallet.id).all():
        check = validate_wallet_balance(db, wallet.id, wallet)
        if check.is_valid:
            continue
        mismatches.append((
            wallet.id,
            wallet.virtual_account_number,
            format_money(check.current_balance),
            format_money(check.calculated_balance),
            format_money(check.discrepancy),
        ))

    logger.info("Reconciliation complete with %s mismatches", len(mismatches))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)
    for row in mismatches:
        writer.writerow(row)

    return output.getvalue(), len(mismatches)
