class LedgerServiceError(Exception):
    pass


class InvalidInputError(LedgerServiceError):
    pass


class InvalidHandleError(InvalidInputError):
    pass


class HandleTakenError(InvalidInputError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class MemberNotFoundError(NotFoundError):
    pass


class SpendRequestNotFoundError(NotFoundError):
    pass


class InvalidStateError(LedgerServiceError):
    pass


class AccountDisabledError(InvalidStateError):
    pass


class AlreadyHandledError(InvalidStateError):
    pass


class InsufficientFundsError(LedgerServiceError):
    pass


class WouldGoNegativeError(InsufficientFundsError):
    pass


class InsufficientBalanceError(InsufficientFundsError):
    pass


class UnauthorizedError(LedgerServiceError):
    pass


class InvalidCredentialsError(UnauthorizedError):
    pass


class TransientStoreError(LedgerServiceError):
    """Transaction gave up after repeated conflicts; nothing was committed."""
