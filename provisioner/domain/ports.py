"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the interfaces (ports) that the domain requires
from infrastructure and from external providers. Adapters implement
these protocols through structural subtyping.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from .models import (
    ApiKeyValidation,
    DnsRecord,
    DnsZone,
    Domain,
    DomainStatus,
    Mailbox,
    MailboxAccount,
    MailboxProfile,
    MailboxStatus,
    RegistrationResult,
    Run,
    SendingIntegration,
    SendingPlatformAccount,
    SourceProvider,
)


class DomainRepository(Protocol):
    """Port interface for domain persistence (entity store)."""

    def create_domain(
        self,
        org_id: str,
        domain: str,
        source_provider: SourceProvider,
        tags: Sequence[str],
        auto_renew: bool,
    ) -> Domain:
        """
        Insert a domain in PENDING status with empty external_refs.

        Raises:
            ConflictError: If the domain name is already recorded
            PersistenceError: On any other write failure
        """
        ...

    def get(self, entity_id: str) -> Domain | None: ...

    def transition_status(
        self, entity_id: str, status: DomainStatus, merged_refs: dict[str, Any]
    ) -> Domain:
        """
        Atomically set status and merge refs into external_refs.

        Keys already present are never overwritten. Returns the
        persisted snapshot.
        """
        ...

    def reopen(self, entity_id: str, status: DomainStatus) -> Domain:
        """Move the domain to status and drop the error key from external_refs."""
        ...

    def delete(self, entity_id: str) -> None: ...


class MailboxRepository(Protocol):
    """Port interface for mailbox persistence (entity store)."""

    def create_mailbox(
        self,
        org_id: str,
        domain_id: str,
        full_email: str,
        first_name: str | None,
        last_name: str | None,
        source_provider: str,
        daily_limit: int,
    ) -> Mailbox:
        """
        Insert a mailbox in PROVISIONING status with empty external_refs.

        Raises:
            ConflictError: If the address is already recorded
            PersistenceError: On any other write failure
        """
        ...

    def get(self, entity_id: str) -> Mailbox | None: ...

    def transition_status(
        self, entity_id: str, status: MailboxStatus, merged_refs: dict[str, Any]
    ) -> Mailbox: ...

    def reopen(self, entity_id: str, status: MailboxStatus) -> Mailbox: ...

    def delete(self, entity_id: str) -> None: ...


class RunLedger(Protocol):
    """
    Port interface for the run ledger of one entity kind.

    At most one QUEUED/RUNNING run may exist per entity. The mark_*
    methods are no-ops on terminal runs and return the stored run.
    """

    def create_run(self, entity_id: str, org_id: str, initiated_by: str | None) -> Run:
        """
        Create a run in QUEUED status.

        Raises:
            ConflictError: If a QUEUED or RUNNING run exists for the entity
            PersistenceError: On write failure
        """
        ...

    def get_run(self, run_id: str) -> Run | None: ...

    def list_runs(self, entity_id: str) -> list[Run]:
        """Runs for the entity, newest first."""
        ...

    def latest_run(self, entity_id: str) -> Run | None: ...

    def mark_running(self, run_id: str) -> Run: ...

    def mark_succeeded(self, run_id: str) -> Run: ...

    def mark_failed(self, run_id: str, error: str) -> Run: ...

    def mark_canceled(self, run_id: str) -> Run: ...

    def delete(self, run_id: str) -> None: ...


class OrganizationDirectory(Protocol):
    """Port interface for organization lookups owned by collaborators."""

    def is_member(self, org_id: str, user_id: str) -> bool: ...

    def get_billing_email(self, org_id: str) -> str | None: ...

    def get_sending_integration(self, org_id: str) -> SendingIntegration | None:
        """Active sending-platform integration for the org, if any."""
        ...


class UsageEventSink(Protocol):
    """Port interface for billable usage events."""

    def emit(
        self,
        org_id: str,
        code: str,
        quantity: int,
        related_refs: dict[str, Any],
        effective_at: datetime,
    ) -> None: ...


class AuditLog(Protocol):
    """Port interface for the audit trail."""

    def record(
        self,
        org_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any],
    ) -> None: ...


class FailureNotifier(Protocol):
    """Port interface for telling an organization that provisioning failed."""

    def notify_provisioning_failed(self, billing_email: str, entity_key: str, reason: str) -> None: ...


class Registrar(Protocol):
    """Port interface for a domain registrar."""

    def register(self, domain_name: str) -> RegistrationResult:
        """
        Register (or confirm) a domain.

        Raises:
            RegistrarError: With reason unavailable, rejected or rate_limited
        """
        ...


class DnsProvider(Protocol):
    """Port interface for DNS hosting."""

    def create_zone(self, domain_name: str) -> DnsZone:
        """
        Create the zone, or return the existing one for this domain.

        Raises:
            DnsProviderError: On provider failure
        """
        ...

    def apply_records(self, zone_id: str, records: Sequence[DnsRecord]) -> None:
        """Upsert records into the zone. Raises DnsProviderError."""
        ...


class MailboxHost(Protocol):
    """Port interface for the mailbox hosting provider."""

    def create_account(self, mailbox_id: str, profile: MailboxProfile) -> MailboxAccount:
        """Raises MailboxProviderError."""
        ...


class SendingPlatform(Protocol):
    """Port interface for a cold-email sending platform."""

    def validate_api_key(self, api_key: str, base_url: str | None = None) -> ApiKeyValidation: ...

    def add_mailbox(
        self, api_key: str, profile: MailboxProfile, base_url: str | None = None
    ) -> SendingPlatformAccount:
        """Raises SendingPlatformError."""
        ...
