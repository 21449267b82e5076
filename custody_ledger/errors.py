"""
Ledger error taxonomy.

Every failure is an expected outcome the caller handles; none is retried
by the ledger and none leaves state partially applied.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str, user: Optional[str] = None, amount: Optional[int] = None):
        super().__init__(message)
        self.user = user
        self.amount = amount

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": str(self),
            "user": self.user,
            "amount": str(self.amount) if self.amount is not None else None
        }


class InvalidAmount(LedgerError):
    """Amount outside the accepted bounds or not an integer"""
    code = "invalid_amount"


class InvalidRecipient(LedgerError):
    """Withdrawal recipient given but empty"""
    code = "invalid_recipient"


class InsufficientBalance(LedgerError):
    """Withdrawal exceeds the user's custodied balance"""
    code = "insufficient_balance"

    def __init__(self, message: str, user: Optional[str] = None,
                 amount: Optional[int] = None, balance: int = 0):
        super().__init__(message, user=user, amount=amount)
        self.balance = balance


class TransferFailed(LedgerError):
    """Custody service rejected a pull or push"""
    code = "transfer_failed"

    def __init__(self, message: str, user: Optional[str] = None,
                 amount: Optional[int] = None, reason: str = ""):
        super().__init__(message, user=user, amount=amount)
        self.reason = reason


class AccrualNotDue(LedgerError):
    """Interest requested before a full annual period has elapsed"""
    code = "accrual_not_due"

    def __init__(self, message: str, user: Optional[str] = None,
                 next_accrual_time: Optional[int] = None):
        super().__init__(message, user=user)
        self.next_accrual_time = next_accrual_time


class InvariantViolation(LedgerError):
    """total_deposited no longer matches the sum of balances"""
    code = "invariant_violation"
