"""Custom exception classes for the ledger service."""


class LedgerError(Exception):
    """Base exception for usage metering and trial billing failures."""


class ConfigurationError(ValueError):
    """Raised when configuration validation fails."""


class UnsignedWebhooksInProductionError(ConfigurationError):
    """Raised when the unsigned-webhook bypass is enabled outside development."""

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(
            f"RETELL_ALLOW_UNSIGNED_WEBHOOKS cannot be enabled in '{environment}'. "
            "Set RETELL_WEBHOOK_SECRET instead.",
        )


# Validation errors: rejected immediately, nothing persisted


class ValidationError(LedgerError, ValueError):
    """Base class for validation errors."""


class CallEventValidationError(ValidationError):
    """Raised when an inbound call event cannot be normalized."""


class InvalidCallPayloadError(CallEventValidationError):
    """Raised when the webhook body is not a JSON object."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid call event payload: {reason}")


class MissingCallIdError(CallEventValidationError):
    """Raised when a call event has no call id."""

    def __init__(self) -> None:
        super().__init__("Call event is missing call_id")


class MissingBusinessReferenceError(CallEventValidationError):
    """Raised when a call event carries nothing that can identify a business."""

    def __init__(self, call_id: str) -> None:
        self.call_id = call_id
        super().__init__(f"Call event {call_id} has no agent id, client id or forwarded number")


# Authentication errors: rejected before any processing


class AuthenticationError(LedgerError):
    """Base class for webhook authentication failures."""


class MissingSignatureError(AuthenticationError):
    """Raised when a webhook arrives without a signature header."""

    def __init__(self) -> None:
        super().__init__("Missing webhook signature")


class InvalidSignatureError(AuthenticationError):
    """Raised when a webhook signature does not match the payload."""

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


# Lookups: acknowledged, retrying will not help


class NotFoundError(LedgerError):
    """Base class for unresolvable references."""


class BusinessNotFoundError(NotFoundError):
    """Raised when no business maps to a call's agent, client id or number."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Business not found for {reference}")


class DuplicateEventError(LedgerError):
    """Raised when a billing webhook event was already processed."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event {event_id} already processed")


# External services: logged and absorbed, never fail ingestion


class ExternalServiceError(LedgerError):
    """Base class for billing provider failures."""


class MeteringServiceError(ExternalServiceError):
    """Raised when the metered-usage API rejects or fails a report."""

    def __init__(self, original_error: str) -> None:
        self.original_error = original_error
        super().__init__(f"Metering report failed: {original_error}")


class BillingProviderError(ExternalServiceError):
    """Raised when a billing provider call other than metering fails."""

    def __init__(self, operation: str, original_error: str) -> None:
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Billing provider {operation} failed: {original_error}")


class NoActiveSubscriptionItemError(LedgerError):
    """Raised when a business has no active subscription with a metered item."""

    def __init__(self, business_id: str) -> None:
        self.business_id = business_id
        super().__init__(f"No active metered subscription item for business {business_id}")


# Trials


class TrialError(LedgerError):
    """Base class for trial start failures."""


class InvalidPhoneNumberError(TrialError, ValidationError):
    """Raised when a business phone number cannot be normalized."""

    reason = "invalid_phone"

    def __init__(self, phone: str) -> None:
        self.phone = phone
        super().__init__("Invalid phone number. Use a valid US number.")


class PhoneAlreadyClaimedError(TrialError):
    """Raised when a normalized phone number was already used for a trial."""

    reason = "phone_already_used_trial"

    def __init__(self, phone: str) -> None:
        self.phone = phone
        super().__init__("This number has already been used for a trial.")
