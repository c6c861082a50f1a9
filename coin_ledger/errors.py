class LedgerServiceError(Exception):
    pass


class AccountNotFoundError(LedgerServiceError):
    pass


class AccountExistsError(LedgerServiceError):
    pass


class IdempotencyConflictError(LedgerServiceError):
    pass


class ConcurrentModificationError(LedgerServiceError):
    pass


class StoreUnavailableError(LedgerServiceError):
    """The store cannot be reached. Nothing was applied; retry the operation."""


class PayoutNotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class PayoutGatewayError(LedgerServiceError):
    """Transient hand-off failure; the payout request stays pending."""


class InvalidCursorError(LedgerServiceError):
    pass
