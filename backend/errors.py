from typing import List, Optional


class MintError(Exception):
    kind = "mint_error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MissingConfigurationError(MintError):
    kind = "missing_configuration"
    http_status = 500


class ValidationError(MintError):
    """Bad input, wrong owner or wrong state. Raised before any side effect."""

    kind = "validation_error"
    http_status = 400


class NotFoundError(ValidationError):
    kind = "not_found"
    http_status = 404


class ForbiddenError(ValidationError):
    kind = "forbidden"
    http_status = 403


class AlreadyMintedError(ValidationError):
    kind = "already_minted"
    http_status = 400


class MintInProgressError(ValidationError):
    """Another attempt holds the item, or a confirmed mint is waiting for reconcile."""

    kind = "mint_in_progress"
    http_status = 409


class InsufficientResourceError(MintError):
    kind = "insufficient_resource"
    http_status = 402


class InsufficientCreditError(InsufficientResourceError):
    kind = "insufficient_credit"


class ChainUnavailableError(MintError):
    """RPC transport failure or an expired confirmation window."""

    kind = "chain_unavailable"
    http_status = 503
    retryable = False

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class ConfirmationTimeoutError(ChainUnavailableError):
    """Blockhash window expired before the requested commitment was observed."""

    kind = "confirmation_timeout"
    retryable = True


class ChainRejectionError(MintError):
    """The program (or preflight simulation) refused the transaction."""

    kind = "chain_rejection"
    http_status = 502

    def __init__(self, message: str, handlers: Optional[List[str]] = None, signature: Optional[str] = None):
        super().__init__(message)
        self.handlers = list(handlers or [])
        self.signature = signature


class ConsistencyWarning(MintError):
    """On-chain mint confirmed but the off-chain commit failed. Cannot be rolled back."""

    kind = "consistency_warning"
    http_status = 500

    def __init__(self, message: str, signature: str):
        super().__init__(message)
        self.signature = signature
