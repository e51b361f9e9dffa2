"""
Reconciliation Exceptions
Error taxonomy for the auto-release engine
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation engine errors"""

    def __init__(self, message: str, order_number: Optional[str] = None, is_retryable: bool = False):
        super().__init__(message)
        self.order_number = order_number
        self.is_retryable = is_retryable


class TransientInfraError(ReconciliationError):
    """Store or network failure - degrades a single signal, never the whole pipeline"""

    def __init__(self, message: str, order_number: Optional[str] = None):
        super().__init__(message, order_number, is_retryable=True)


class DoubleSpendAttempt(ReconciliationError):
    """A bank transaction already funded a release for some order"""

    def __init__(self, transaction_id: str, order_number: Optional[str] = None,
                 released_order_number: Optional[str] = None):
        super().__init__(
            f"Transaction {transaction_id} already used for release of order {released_order_number}",
            order_number,
        )
        self.transaction_id = transaction_id
        self.released_order_number = released_order_number


class ThirdPartyPayment(ReconciliationError):
    """Payment whose sender cannot be tied to any known counterparty"""

    def __init__(self, transaction_id: str, sender_name: str):
        super().__init__(f"Payment {transaction_id} from '{sender_name}' matches no counterparty")
        self.transaction_id = transaction_id
        self.sender_name = sender_name


class ReleaseExecutionFailure(ReconciliationError):
    """Exchange rejected or failed the release call"""

    def __init__(self, message: str, order_number: Optional[str] = None):
        super().__init__(message, order_number, is_retryable=True)


class ConfigurationError(ReconciliationError):
    """Missing or invalid configuration (e.g. no 2FA provider) - fatal to that attempt"""
    pass
