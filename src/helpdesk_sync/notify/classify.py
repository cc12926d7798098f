"""
Classification of delivery failures.

classify_delivery_error() decides whether a failed send is worth retrying:
1. A structured error_code from the transport is used when present
2. Otherwise the error text is matched against HEURISTICS, in order

The substring table is a last resort: provider error text is not a stable
interface, so every entry is covered by tests and new transports should
report error codes instead.
"""

from helpdesk_sync.notify.types import DeliveryErrorClass, DeliveryResult

ERROR_CODES: dict[str, DeliveryErrorClass] = {
    "not_configured": DeliveryErrorClass.CONFIG_ERROR,
    "invalid_public_key": DeliveryErrorClass.CONFIG_ERROR,
    "invalid_service_id": DeliveryErrorClass.CONFIG_ERROR,
    "template_not_found": DeliveryErrorClass.CONFIG_ERROR,
    "blocked": DeliveryErrorClass.REJECTED,
    "invalid_recipient": DeliveryErrorClass.REJECTED,
    "rate_limited": DeliveryErrorClass.TRANSIENT,
    "timeout": DeliveryErrorClass.TRANSIENT,
    "unavailable": DeliveryErrorClass.TRANSIENT,
}

# (lowercase substring, class, operator-facing explanation)
HEURISTICS: tuple[tuple[str, DeliveryErrorClass, str], ...] = (
    (
        "not configured",
        DeliveryErrorClass.CONFIG_ERROR,
        "Email delivery is not configured. Set the EmailJS service id and public key.",
    ),
    (
        "public key is invalid",
        DeliveryErrorClass.CONFIG_ERROR,
        "The EmailJS public key appears to be incorrect.",
    ),
    (
        "service id is invalid",
        DeliveryErrorClass.CONFIG_ERROR,
        "The EmailJS service id appears to be incorrect.",
    ),
    (
        "template id",
        DeliveryErrorClass.CONFIG_ERROR,
        "The EmailJS template was not found.",
    ),
    (
        "blocked",
        DeliveryErrorClass.REJECTED,
        "The EmailJS service has been temporarily blocked, likely by spam prevention.",
    ),
)

_CODE_REASONS = {
    "not_configured": HEURISTICS[0][2],
    "invalid_public_key": HEURISTICS[1][2],
    "invalid_service_id": HEURISTICS[2][2],
    "template_not_found": HEURISTICS[3][2],
    "blocked": HEURISTICS[4][2],
}


def classify_message(message: str | None) -> DeliveryErrorClass:
    """Classify raw provider error text with the substring table."""
    lower = (message or "").lower()
    for needle, error_class, _ in HEURISTICS:
        if needle in lower:
            return error_class
    return DeliveryErrorClass.TRANSIENT


def classify_delivery_error(result: DeliveryResult) -> DeliveryErrorClass:
    """
    Classify a failed DeliveryResult.

    Unknown error codes fall through to the text heuristics.
    """
    if result.error_code and result.error_code in ERROR_CODES:
        return ERROR_CODES[result.error_code]
    return classify_message(result.error)


def describe_delivery_error(result: DeliveryResult) -> str:
    """Operator-facing explanation of a failed delivery."""
    if result.error_code in _CODE_REASONS:
        return _CODE_REASONS[result.error_code]
    lower = (result.error or "").lower()
    for needle, _, explanation in HEURISTICS:
        if needle in lower:
            return explanation
    return f"An unexpected error occurred. Raw error: {result.error or 'unknown'}"
