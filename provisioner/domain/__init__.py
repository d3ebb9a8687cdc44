"""
Domain layer - Pure business logic with zero framework imports.

This package contains the provisioning core: the run state machine,
the step plans per source provider, and the service that creates
entities and runs. It defines its own port interfaces for persistence
and provider abstraction, ensuring true hexagonal architecture decoupling.
"""

from .exceptions import (
    ConflictError,
    DnsProviderError,
    MailboxProviderError,
    NotAMemberError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ProvisioningError,
    RegistrarError,
    SendingPlatformError,
    ValidationError,
)
from .models import (
    BatchOutcome,
    Domain,
    DomainStatus,
    EntityKind,
    Mailbox,
    MailboxStatus,
    ProvisioningOutcome,
    Run,
    RunStatus,
    SourceProvider,
)
from .orchestrator import RunExecutor
from .provisioning import ProvisioningService

__all__ = [
    "BatchOutcome",
    "ConflictError",
    "DnsProviderError",
    "Domain",
    "DomainStatus",
    "EntityKind",
    "Mailbox",
    "MailboxProviderError",
    "MailboxStatus",
    "NotAMemberError",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "ProvisioningError",
    "ProvisioningOutcome",
    "ProvisioningService",
    "RegistrarError",
    "Run",
    "RunExecutor",
    "RunStatus",
    "SendingPlatformError",
    "SourceProvider",
    "ValidationError",
]
