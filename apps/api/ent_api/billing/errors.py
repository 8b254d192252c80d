"""Billing error taxonomy.

Stale transitions and rate-limit denials are outcomes, not exceptions.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class SignatureInvalid(BillingError):
    """Signature header missing, malformed, expired or not matching.

    Never retried locally; the processor re-delivers on its own schedule.
    """

    pass


class MalformedPayload(BillingError):
    """Correctly signed body that does not parse into an event.

    ``body`` holds the decoded JSON when decoding got that far.
    """

    def __init__(self, message: str, *, body: dict | None = None):
        super().__init__(message)
        self.body = body


class UnresolvableUser(BillingError):
    """Transition whose customer / subscription maps to no local user."""

    def __init__(self, message: str, *, customer_id: str | None = None, subscription_id: str | None = None):
        super().__init__(message)
        self.customer_id = customer_id
        self.subscription_id = subscription_id


class TransientStoreFailure(BillingError):
    """Store failure worth retrying (connection loss, lost CAS race, ...)."""

    pass


class ConcurrentUpdateError(TransientStoreFailure):
    """Optimistic compare-and-swap lost against a concurrent writer."""

    pass


class ProviderError(BillingError):
    """Processor API failed while fetching subscription truth."""

    pass
