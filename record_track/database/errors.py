"""
database/errors.py

Error taxonomy shared by the store, the ledgers and the reconciler.

Every error below carries a user-facing message, so controllers can show
str(exc) directly in a message box / footer without further formatting.
"""
from __future__ import annotations


class DomainError(Exception):
    """Domain-level error the controller/UI can surface (toast/snackbar)."""
    pass


class ValidationError(DomainError):
    """
    Bad user input, raised before any write happens.

    `field` names the offending wire field (e.g. 'amountReceived') so a form
    can highlight it and keep the rest of its values.
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class StoreError(DomainError):
    """
    Failure talking to the document store (read or write).

    Local state is only ever updated from subscriptions, so a StoreError never
    leaves half-applied UI state behind; callers may simply retry.
    """

    retryable = True

    def __init__(self, message: str, *, retryable: bool | None = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class DocumentNotFoundError(StoreError):
    retryable = False

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class DuplicatePaymentError(DomainError):
    def __init__(self, sale_id: str, payment_id: str):
        super().__init__(f"Sale {sale_id} already has a payment record ({payment_id}).")
        self.sale_id = sale_id
        self.payment_id = payment_id


class ConsistencyWarning(UserWarning):
    """
    Data-integrity anomaly found while reconciling (duplicate payments for one
    sale, payment pointing at a sale that no longer exists). Logged and
    resolved by picking one record; never fatal.
    """
    pass
