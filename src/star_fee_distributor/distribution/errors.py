"""Error taxonomy for the fee distributor.

Every failure aborts the whole call. Codes are stable so that keepers and
dashboards can key on them regardless of the message text.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Broad classes of failures, used for metrics and retry decisions."""

    CONFIGURATION = "configuration"
    TIMING = "timing"
    SAFETY = "safety"
    ARITHMETIC = "arithmetic"
    INPUT = "input"
    ACCOUNT = "account"
    TRANSFER = "transfer"


class DistributorError(Exception):
    """Base class for every error raised by the distributor."""

    code: int = 6999
    category: ErrorCategory = ErrorCategory.INPUT
    default_message: str = "Fee distribution failed."

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.name,
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            **{key: value for key, value in self.context.items()},
        }


class BaseFeeDetected(DistributorError):
    code = 6000
    category = ErrorCategory.SAFETY
    default_message = "Base-denominated fees detected, aborting distribution."


class DistributionTooEarly(DistributorError):
    code = 6001
    category = ErrorCategory.TIMING
    default_message = "Distribution crank called too early. Must wait 24 hours."


class NoLockedInvestors(DistributorError):
    code = 6002
    default_message = "No locked investors found at this time."


class InvalidQuoteOnlyConfig(DistributorError):
    code = 6003
    category = ErrorCategory.CONFIGURATION
    default_message = "Invalid pool configuration: cannot guarantee quote-only fee accrual."


class InvalidPoolTokenOrder(DistributorError):
    code = 6004
    category = ErrorCategory.CONFIGURATION
    default_message = "Invalid pool token order. Quote mint must be the second token in the pool."


class InvalidFeeShareBps(DistributorError):
    code = 6005
    category = ErrorCategory.CONFIGURATION
    default_message = "Investor fee share basis points cannot exceed 10000 (100%)."


class InvalidDailyCap(DistributorError):
    code = 6006
    category = ErrorCategory.CONFIGURATION
    default_message = "Daily cap must be greater than zero."


class InvalidMinPayout(DistributorError):
    code = 6007
    category = ErrorCategory.CONFIGURATION
    default_message = "Minimum payout must be greater than zero."


class InvalidY0(DistributorError):
    code = 6008
    category = ErrorCategory.CONFIGURATION
    default_message = "Y0 (total allocation) must be greater than zero."


class InvalidPage(DistributorError):
    code = 6009
    default_message = "Pagination page must be greater than zero."


class InvalidCpAmmConfig(DistributorError):
    code = 6010
    category = ErrorCategory.CONFIGURATION
    default_message = "Invalid CP-AMM pool configuration provided."


class InsufficientQuoteFees(DistributorError):
    code = 6012
    category = ErrorCategory.TRANSFER
    default_message = "Insufficient quote fees to distribute."


class MathOverflow(DistributorError):
    code = 6017
    category = ErrorCategory.ARITHMETIC
    default_message = "Math overflow occurred during fee distribution calculation."


class InvalidOwner(DistributorError):
    code = 6019
    category = ErrorCategory.ACCOUNT
    default_message = "Account ownership verification failed."


class NotInitialized(DistributorError):
    code = 6020
    category = ErrorCategory.ACCOUNT
    default_message = "Account is not initialized."


class AlreadyInitialized(DistributorError):
    code = 6021
    category = ErrorCategory.ACCOUNT
    default_message = "Account is already initialized."


class InvalidQuoteMint(DistributorError):
    code = 6022
    category = ErrorCategory.CONFIGURATION
    default_message = "Invalid mint for the expected quote token."


class TokenTransferFailed(DistributorError):
    code = 6024
    category = ErrorCategory.TRANSFER
    default_message = "Token transfer failed."


class DistributionAlreadyComplete(DistributorError):
    code = 6025
    category = ErrorCategory.TIMING
    default_message = "Distribution is already complete for this day."


class PageOutOfOrder(InvalidPage):
    code = 6026
    default_message = "Page does not advance the pagination cursor."


class PageTooLarge(DistributorError):
    code = 6027
    default_message = "Investor page exceeds the maximum page size; resubmit with a smaller page."


class InvalidAccountData(DistributorError):
    code = 6028
    category = ErrorCategory.ACCOUNT
    default_message = "Account data does not match the expected layout."


class PageSizeMismatch(InvalidPage):
    code = 6029
    default_message = "Day was started with a different page size; resume it with the same size."


RETRYABLE_CATEGORIES = frozenset({ErrorCategory.TRANSFER})


def is_retryable(exc: BaseException) -> bool:
    """Whether an external caller may resubmit the same call unchanged."""

    return isinstance(exc, DistributorError) and exc.category in RETRYABLE_CATEGORIES


__all__ = [
    "AlreadyInitialized",
    "BaseFeeDetected",
    "DistributionAlreadyComplete",
    "DistributionTooEarly",
    "DistributorError",
    "ErrorCategory",
    "InsufficientQuoteFees",
    "InvalidAccountData",
    "InvalidCpAmmConfig",
    "InvalidDailyCap",
    "InvalidFeeShareBps",
    "InvalidMinPayout",
    "InvalidOwner",
    "InvalidPage",
    "InvalidPoolTokenOrder",
    "InvalidQuoteMint",
    "InvalidQuoteOnlyConfig",
    "InvalidY0",
    "MathOverflow",
    "NoLockedInvestors",
    "NotInitialized",
    "PageOutOfOrder",
    "PageSizeMismatch",
    "PageTooLarge",
    "TokenTransferFailed",
    "RETRYABLE_CATEGORIES",
    "is_retryable",
]
