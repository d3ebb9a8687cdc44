"""
Domain models - Entities, runs and provider results.

Plain dataclasses and str-mixin enums shared by the domain service,
the orchestrator and the adapters. No framework imports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EntityKind(str, Enum):
    """Kind of provisioned entity. Selects the store and the run ledger."""

    DOMAIN = "domain"
    MAILBOX = "mailbox"


class SourceProvider(str, Enum):
    """
    Registration path for a domain.

    - PLATFORM_REGISTRAR: purchased through the platform, registered by us
    - IMPORTED_REGISTRAR: imported from a customer registrar account
    - EXTERNAL: already registered elsewhere, no registration step
    """

    PLATFORM_REGISTRAR = "platform-registrar"
    IMPORTED_REGISTRAR = "imported-registrar"
    EXTERNAL = "external"


class DomainStatus(str, Enum):
    """
    Domain lifecycle states.

    PENDING -> PROVISIONING -> READY | ERROR
    ERROR -> PROVISIONING (retry run)

    SUSPENDED and EXPIRED are set by collaborators outside this package.
    """

    PENDING = "pending"
    PROVISIONING = "provisioning"
    READY = "ready"
    ERROR = "error"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class MailboxStatus(str, Enum):
    """
    Mailbox lifecycle states.

    PROVISIONING -> ACTIVE | ERROR
    ERROR -> PROVISIONING (retry run)
    """

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    DELETED = "deleted"


class RunStatus(str, Enum):
    """
    Run states.

    QUEUED -> RUNNING -> SUCCEEDED | FAILED | CANCELED

    Terminal runs are immutable.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.QUEUED, RunStatus.RUNNING})

# Keys written into external_refs, by step
REF_ORDER_ID = "order_id"
REF_ZONE_ID = "cloudflare_zone_id"
REF_NAMESERVERS = "cloudflare_nameservers"
REF_ACCOUNT_ID = "account_id"
REF_EXTERNAL_ID = "external_id"
REF_ERROR = "error"


@dataclass
class Domain:
    id: str
    organization_id: str
    domain: str
    status: DomainStatus
    source_provider: SourceProvider
    tags: list[str] = field(default_factory=list)
    auto_renew: bool = True
    external_refs: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def key(self) -> str:
        return self.domain


@dataclass
class Mailbox:
    id: str
    organization_id: str
    domain_id: str
    full_email: str
    status: MailboxStatus
    source_provider: str
    first_name: str | None = None
    last_name: str | None = None
    daily_limit: int = 50
    external_refs: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def key(self) -> str:
        return self.full_email


@dataclass
class Run:
    """One recorded attempt to provision an entity end-to-end."""

    id: str
    kind: EntityKind
    entity_id: str
    organization_id: str
    status: RunStatus
    initiated_by: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class DnsRecord:
    type: str
    name: str
    content: str
    ttl: int = 3600


@dataclass(frozen=True)
class MailboxProfile:
    email: str
    first_name: str
    last_name: str


@dataclass(frozen=True)
class SendingIntegration:
    """An organization's configured sending-platform integration."""

    platform: str
    api_key: str
    base_url: str | None = None


# Provider results - the narrow contract the orchestrator sees


@dataclass(frozen=True)
class RegistrationResult:
    order_id: str


@dataclass(frozen=True)
class DnsZone:
    zone_id: str
    nameservers: tuple[str, ...]


@dataclass(frozen=True)
class MailboxAccount:
    account_id: str


@dataclass(frozen=True)
class SendingPlatformAccount:
    external_id: str


@dataclass(frozen=True)
class ApiKeyValidation:
    valid: bool
    error: str | None = None


@dataclass
class ProvisioningOutcome:
    entity: Domain | Mailbox
    run: Run


@dataclass
class BatchOutcome:
    mailboxes: list[Mailbox]
    runs: list[Run]
