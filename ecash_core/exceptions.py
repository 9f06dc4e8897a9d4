"""
Exceptions raised by the ecash core.

Every error carries a numeric ``code`` so a transport layer can map it to a
protocol error response without string matching. Messages may name the
failing input (index, amount or ``Y``) but never a secret or private key.
"""

from typing import Optional


class EcashError(Exception):
    """Base exception for ecash errors."""

    code = 10000
    detail = "ecash error"

    def __init__(self, detail: Optional[str] = None, code: Optional[int] = None):
        self.detail = detail or self.detail
        self.code = code or self.code
        super().__init__(self.detail)


class ConfigurationError(EcashError):
    """Invalid settings or keyset configuration."""

    detail = "configuration error"


class InvalidInputError(EcashError):
    """Malformed point, scalar, amount or message."""

    detail = "invalid input"


class DuplicateInputsError(InvalidInputError):
    code = 11007
    detail = "duplicate inputs provided"


class DuplicateOutputsError(InvalidInputError):
    code = 11008
    detail = "duplicate outputs provided"


class TransactionLimitError(InvalidInputError):
    code = 11006
    detail = "amount outside of limit range"


class UnknownKeysetError(EcashError):
    code = 12001
    detail = "keyset is not known"


class KeysetInactiveError(EcashError):
    """Keyset exists but no longer signs new outputs."""

    code = 12002
    detail = "keyset is inactive, cannot sign messages"


class SignatureInvalidError(EcashError):
    """BDHKE signature or DLEQ proof mismatch."""

    code = 10003
    detail = "could not verify proof"


class AlreadySpentError(EcashError):
    code = 11001
    detail = "proof already spent"


class TokenPendingError(AlreadySpentError):
    """Proof is reserved by an in-flight melt."""

    code = 11002
    detail = "proof is pending"


class AmountMismatchError(EcashError):
    """Value conservation violated."""

    code = 11005
    detail = "transaction is not balanced"


class WitnessInvalidError(EcashError):
    """Spending condition not satisfied by the witness."""

    code = 10004
    detail = "spending conditions not met"


class QuoteNotFoundError(EcashError):
    code = 20008
    detail = "quote not found"


class QuoteStateInvalidError(EcashError):
    """Quote is in the wrong lifecycle state for the requested transition."""

    code = 20001
    detail = "quote is in an invalid state"


class QuoteExpiredError(EcashError):
    code = 20007
    detail = "quote expired"


class PaymentFailedError(EcashError):
    """The payment rail reported a definitive failure."""

    code = 20010
    detail = "payment failed"

    def __init__(
        self,
        detail: Optional[str] = None,
        code: Optional[int] = None,
        rolled_back: bool = True,
    ):
        super().__init__(detail, code)
        self.rolled_back = rolled_back


class OutputsAlreadySignedError(InvalidInputError):
    """A blinded message already has a stored signature."""

    code = 10002
    detail = "outputs have already been signed before"
