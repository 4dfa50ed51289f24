"""End-user wallet balances."""

from dataclasses import dataclass

from .. import audit
from ..db import Database
from ..errors import Result, invalid, not_found, success


@dataclass
class WalletCredit:
    end_user_id: str
    balance_cents: int
    applied: bool


class WalletService:
    """Wallet top-ups and refunds.

    Balances change only through ``balance + delta`` in the database, once per
    caller-supplied reference.
    """

    def __init__(self, db: Database):
        self.db = db

    def get_balance(self, end_user_id: str) -> Result[int]:
        user = self.db.get_end_user(end_user_id)
        if not user:
            return not_found(f"End user {end_user_id} not found")
        return success(user.wallet_balance_cents)

    def credit(self, end_user_id: str, amount_cents: int, reference: str) -> Result[WalletCredit]:
        """Add ``amount_cents`` (negative to debit) to a wallet.

        Repeating a reference leaves the balance unchanged and reports
        ``applied=False``.
        """
        if not reference:
            return invalid("reference is required")
        if not isinstance(amount_cents, int) or amount_cents == 0:
            return invalid("amount_cents must be a non-zero integer")

        user = self.db.get_end_user(end_user_id)
        if not user:
            return not_found(f"End user {end_user_id} not found")

        balance = self.db.credit_wallet(end_user_id, amount_cents, reference)
        if balance is None:
            current = self.db.get_end_user(end_user_id)
            return success(WalletCredit(end_user_id, current.wallet_balance_cents, applied=False))

        audit.log_wallet_credit(end_user_id, amount_cents, reference, balance)
        return success(WalletCredit(end_user_id, balance, applied=True))
