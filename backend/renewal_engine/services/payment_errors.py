"""Payment error taxonomy shared by the retry engine and webhook ingestion

Gateways report errors as free-form codes and messages. Classification is a
pattern match against the lower-cased text; anything unrecognised is
non-retryable so an unknown failure leads to suspension, never to an endless
retry loop.
"""
import enum
import re
from dataclasses import dataclass
from typing import Optional


class ErrorCategory(str, enum.Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    CONFIGURATION = "configuration"


# Codes used by the engine itself
MISSING_PAYMENT_METHOD = "missing_payment_method"
GATEWAY_NOT_CONFIGURED = "gateway_not_configured"
NETWORK_ERROR = "network_error"
TIMEOUT = "timeout"

# Non-retryable patterns are checked first: "card_declined: expired_card" is
# an expired card, not a soft decline.
NON_RETRYABLE_PATTERNS = (
    r"expired[_ ]card",
    r"card[_ ]expired",
    r"invalid[_ ](payment[_ ]method|card|number|account)",
    r"incorrect[_ ]number",
    r"stolen[_ ]card",
    r"lost[_ ]card",
    r"fraudulent",
    r"do[_ ]not[_ ]honor",
)

CONFIGURATION_PATTERNS = (
    r"missing[_ ]payment[_ ]method",
    r"no[_ ]payment[_ ]method",
    r"gateway[_ ]not[_ ]configured",
    r"authentication",
    r"unauthori[sz]ed",
    r"invalid[_ ]api[_ ]key",
    r"permission",
    r"configuration",
)

RETRYABLE_PATTERNS = (
    r"insufficient[_ ]funds",
    r"card[_ ]declined",
    r"generic[_ ]decline",
    r"processing[_ ]error",
    r"network",
    r"connection",
    r"timed?[_ ]?out",
    r"timeout",
    r"temporarily[_ ]unavailable",
    r"service[_ ]unavailable",
    r"rate[_ ]limit",
    r"try[_ ]again",
)


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    error: str

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.RETRYABLE

    @property
    def suspension_reason(self) -> str:
        if self.category == ErrorCategory.CONFIGURATION:
            return "configuration_error"
        return "non_retryable_error"


def _matches(patterns, text: str) -> bool:
    return any(re.search(pattern, text) for pattern in patterns)


def classify_error(error_code: Optional[str], message: Optional[str] = None) -> ErrorClassification:
    """Classify a gateway error code/message

    Args:
        error_code: Gateway error or decline code, e.g. 'insufficient_funds'
        message: Optional human-readable message from the gateway

    Returns:
        ErrorClassification with the category and the combined error text
    """
    text = " ".join(part for part in (error_code, message) if part).strip()
    normalized = text.lower()
    error = text or "unknown_error"

    if not normalized:
        return ErrorClassification(ErrorCategory.NON_RETRYABLE, error)
    if _matches(NON_RETRYABLE_PATTERNS, normalized):
        return ErrorClassification(ErrorCategory.NON_RETRYABLE, error)
    if _matches(CONFIGURATION_PATTERNS, normalized):
        return ErrorClassification(ErrorCategory.CONFIGURATION, error)
    if _matches(RETRYABLE_PATTERNS, normalized):
        return ErrorClassification(ErrorCategory.RETRYABLE, error)
    return ErrorClassification(ErrorCategory.NON_RETRYABLE, error)


def is_retryable(error_code: Optional[str], message: Optional[str] = None) -> bool:
    return classify_error(error_code, message).retryable
