"""
Domain exceptions - Semantic error types for provisioning.

This module defines domain-specific exceptions that communicate
business rule violations and provider failures without leaking
infrastructure details.
"""


class ProvisioningError(Exception):
    """Base class for provisioning domain errors."""

    pass


class ValidationError(ProvisioningError):
    """Bad input. No run is ever created."""

    pass


class NotAMemberError(ValidationError):
    """Acting user is not a verified member of the organization."""

    pass


class NotFoundError(ProvisioningError):
    """Entity or run does not exist (or belongs to another organization)."""

    pass


class ConflictError(ProvisioningError):
    """Duplicate in-flight run or duplicate entity key. No state change."""

    pass


class PersistenceError(ProvisioningError):
    """Store write failure. Fatal to the current operation."""

    pass


class ProviderError(ProvisioningError):
    """
    An external provider call failed.

    Caught by the orchestrator, recorded into entity and run state,
    then re-raised to the caller.
    """

    # ProvisioningOutcome recorded by the executor before re-raising
    outcome = None


class RegistrarError(ProviderError):
    """Domain registration failed at the registrar."""

    UNAVAILABLE = "unavailable"
    REJECTED = "rejected"
    RATE_LIMITED = "rate_limited"

    def __init__(self, message: str, reason: str = REJECTED) -> None:
        super().__init__(message)
        self.reason = reason


class DnsProviderError(ProviderError):
    """DNS zone creation or record application failed."""

    pass


class MailboxProviderError(ProviderError):
    """Mailbox host account creation failed."""

    pass


class SendingPlatformError(ProviderError):
    """Sending platform rejected the mailbox or the API key."""

    pass
