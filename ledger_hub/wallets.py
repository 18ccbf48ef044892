import re
from typing import Optional

from sqlalchemy.orm import Session

from ledger_hub.logging_config import get_logger
from ledger_hub.models import Wallet

logger = get_logger(__name__)

NUBAN_LENGTH = 10


def account_number_variations(account_number: str) -> list[str]:
    """Forms a provider may send for the same NUBAN, most specific first."""
    candidates = [
        account_number,
        account_number.lstrip("0"),
        "0" + account_number,
        re.sub(r"\D", "", account_number),
        account_number.rjust(NUBAN_LENGTH, "0"),
        account_number[:NUBAN_LENGTH],
    ]
    variations: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variations:
            variations.append(candidate)
    return variations


def find_wallet_by_account_number(db: Session, account_number: Optional[str]) -> Optional[Wallet]:
    if not account_number:
        logger.warning("Wallet lookup without an account number")
        return None
    variations = account_number_variations(account_number.strip())
    matches = db.query(Wallet).filter(Wallet.virtual_account_number.in_(variations)).all()
    if not matches:
        logger.warning("No wallet found for account number %s (tried %s)", account_number, ", ".join(variations))
        return None
    by_number = {wallet.virtual_account_number: wallet for wallet in matches}
    wallet = next(by_number[v] for v in variations if v in by_number)
    logger.info("Found wallet %s for account number %s", wallet.id, account_number)
    return wallet
