"""
Provisioning domain service - Entity creation, run creation and execution.

This module contains the operations exposed to collaborators:

- create_domain: record a domain, queue a run, provision it synchronously
- create_mailboxes: record N mailboxes on a ready domain, one run each
- retry_provisioning: queue and execute a fresh run for an existing entity
- get_domain, get_mailbox, list_runs, latest_run: org-scoped reads of
  entities and their run ledger

Each operation validates membership first (no run is created for a
non-member), writes the entity and its run under a compensation stack,
emits a usage event and an audit record (both best-effort), then hands
the run to the RunExecutor.

Mailbox batches are not atomic: a provider failure on one mailbox is
recorded on that mailbox's run and the batch continues.
"""

import logging
import re
import threading
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .compensation import CompensationStack
from .exceptions import NotAMemberError, NotFoundError, ProviderError, ValidationError
from .models import (
    BatchOutcome,
    Domain,
    DomainStatus,
    EntityKind,
    Mailbox,
    MailboxStatus,
    ProvisioningOutcome,
    Run,
    SendingIntegration,
    SourceProvider,
)
from .orchestrator import DOMAIN_LIFECYCLE, MAILBOX_LIFECYCLE, RunExecutor
from .ports import (
    AuditLog,
    DnsProvider,
    DomainRepository,
    FailureNotifier,
    MailboxHost,
    MailboxRepository,
    OrganizationDirectory,
    Registrar,
    RunLedger,
    SendingPlatform,
    UsageEventSink,
)
from .steps import Step, baseline_records, plan_domain_steps, plan_mailbox_steps

logger = logging.getLogger(__name__)

_DOMAIN_NAME = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+([a-z]{2,63}|xn--[a-z0-9-]{1,59})$"
)

RETRYABLE_DOMAIN_STATUSES = frozenset({DomainStatus.PENDING, DomainStatus.PROVISIONING, DomainStatus.ERROR})
RETRYABLE_MAILBOX_STATUSES = frozenset({MailboxStatus.PROVISIONING, MailboxStatus.ERROR})


def normalize_domain_name(name: str) -> str:
    """
    Normalize and validate a domain name.

    Raises:
        ValidationError: If the name is not a syntactically valid hostname
    """
    normalized = name.strip().lower().rstrip(".")
    if not _DOMAIN_NAME.match(normalized):
        raise ValidationError(f"Invalid domain name: {name!r}")
    return normalized


def mailbox_identities(
    domain_name: str,
    count: int,
    first_name_pattern: str | None = None,
    last_name_pattern: str | None = None,
) -> Iterator[tuple[str, str | None, str]]:
    """
    Generate (first_name, last_name, full_email) for a batch.

    Numbering starts at 1: pattern "sales" yields sales1, sales2, ...
    Without a pattern the local part is user1, user2, ...
    """
    for i in range(1, count + 1):
        first_name = f"{first_name_pattern}{i}" if first_name_pattern else f"user{i}"
        last_name = f"{last_name_pattern}{i}" if last_name_pattern else None
        yield first_name, last_name, f"{first_name}@{domain_name}".lower()


@dataclass
class ProvisioningService:
    """
    Domain service for domain and mailbox provisioning.

    All collaborators are injected; nothing here reaches for a global
    client. Runs execute synchronously inside the calling request.
    """

    domains: DomainRepository
    mailboxes: MailboxRepository
    domain_runs: RunLedger
    mailbox_runs: RunLedger
    organizations: OrganizationDirectory
    usage: UsageEventSink
    audit: AuditLog
    notifier: FailureNotifier
    registrars: Mapping[str, Registrar]
    dns: DnsProvider
    mailbox_host: MailboxHost
    sending_platforms: Mapping[str, SendingPlatform] = field(default_factory=dict)
    spf_include: str = "_spf.instantly.ai"
    dmarc_policy: str = "none"
    default_mailbox_provider: str = "mailbox-host"
    default_daily_limit: int = 50
    max_mailboxes_per_request: int = 100

    def __post_init__(self) -> None:
        self._domain_executor = RunExecutor(
            entities=self.domains,
            runs=self.domain_runs,
            lifecycle=DOMAIN_LIFECYCLE,
            organizations=self.organizations,
            notifier=self.notifier,
        )
        self._mailbox_executor = RunExecutor(
            entities=self.mailboxes,
            runs=self.mailbox_runs,
            lifecycle=MAILBOX_LIFECYCLE,
            organizations=self.organizations,
            notifier=self.notifier,
        )

    def create_domain(
        self,
        org_id: str,
        user_id: str,
        domain_name: str,
        source_provider: str,
        tags: Sequence[str] | None = None,
        auto_renew: bool = True,
    ) -> ProvisioningOutcome:
        """
        Record a domain and provision it.

        Args:
            org_id: Owning organization
            user_id: Acting user (must be a member)
            domain_name: Domain to provision (will be normalized)
            source_provider: platform-registrar, imported-registrar or external
            tags: Free-form labels
            auto_renew: Renewal preference stored on the domain

        Returns:
            Terminal domain snapshot and its run

        Raises:
            NotAMemberError: If the user is not a member of the org
            ValidationError: Bad name or unknown source provider
            ConflictError: If the domain is already recorded
            PersistenceError: If the domain or run cannot be written
            ProviderError: If a provisioning step failed (state recorded)
        """
        self._require_member(org_id, user_id)
        name = normalize_domain_name(domain_name)
        try:
            provider = SourceProvider(source_provider)
        except ValueError:
            raise ValidationError(f"Unknown source provider: {source_provider!r}") from None

        with CompensationStack() as undo:
            domain = self.domains.create_domain(org_id, name, provider, list(tags or []), auto_renew)
            undo.push(lambda: self.domains.delete(domain.id), f"delete domain {domain.id}")
            steps = self._domain_steps(domain)
            run = self.domain_runs.create_run(domain.id, org_id, user_id)

        logger.info("Domain %s created for org %s (run %s)", name, org_id, run.id)
        self._record_audit(
            org_id,
            user_id,
            "domain.create",
            "domain",
            domain.id,
            {"domain": name, "source_provider": provider.value},
        )
        self._emit_usage(
            org_id,
            "domain_created",
            {"domain_id": domain.id, "domain": name, "source_provider": provider.value},
        )

        return self._domain_executor.execute(run, domain, steps)

    def create_mailboxes(
        self,
        org_id: str,
        user_id: str,
        domain_id: str,
        count: int,
        first_name_pattern: str | None = None,
        last_name_pattern: str | None = None,
    ) -> BatchOutcome:
        """
        Record and provision `count` mailboxes on a ready domain.

        Each mailbox gets its own entity and run. A provider failure on
        one mailbox leaves that run FAILED and the batch continues;
        callers must inspect each run.

        Raises:
            NotAMemberError: If the user is not a member of the org
            ValidationError: Bad count, domain not ready, or the org's
                sending platform has no adapter
            NotFoundError: Unknown domain for this org
            ConflictError / PersistenceError: If an entity or run cannot be
                written (mailboxes already provisioned are kept)
        """
        self._require_member(org_id, user_id)
        if count < 1 or count > self.max_mailboxes_per_request:
            raise ValidationError(f"count must be between 1 and {self.max_mailboxes_per_request}")

        domain = self.get_domain(domain_id, org_id)
        if domain.status != DomainStatus.READY:
            raise ValidationError("Domain must be in 'ready' status before creating mailboxes")

        integration, platform = self._sending_platform_for(org_id)

        mailboxes: list[Mailbox] = []
        runs: list[Run] = []
        for first_name, last_name, full_email in mailbox_identities(
            domain.domain, count, first_name_pattern, last_name_pattern
        ):
            with CompensationStack() as undo:
                mailbox = self.mailboxes.create_mailbox(
                    org_id,
                    domain.id,
                    full_email,
                    first_name,
                    last_name,
                    self.default_mailbox_provider,
                    self.default_daily_limit,
                )
                undo.push(lambda: self.mailboxes.delete(mailbox.id), f"delete mailbox {mailbox.id}")
                run = self.mailbox_runs.create_run(mailbox.id, org_id, user_id)

            self._emit_usage(
                org_id,
                "mailbox_created",
                {"mailbox_id": mailbox.id, "domain_id": domain.id, "full_email": full_email},
            )

            steps = plan_mailbox_steps(mailbox, self.mailbox_host, integration, platform)
            try:
                outcome = self._mailbox_executor.execute(run, mailbox, steps)
            except ProviderError as exc:
                logger.warning("Mailbox %s failed to provision: %s", full_email, exc)
                outcome = exc.outcome

            mailboxes.append(outcome.entity)
            runs.append(outcome.run)

        self._record_audit(
            org_id,
            user_id,
            "mailboxes.create",
            "domain",
            domain.id,
            {"count": count, "domain": domain.domain},
        )
        return BatchOutcome(mailboxes=mailboxes, runs=runs)

    def retry_provisioning(
        self,
        entity_id: str,
        kind: EntityKind = EntityKind.DOMAIN,
        initiated_by: str | None = None,
        org_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> ProvisioningOutcome:
        """
        Queue and execute a brand-new run for an existing entity.

        The new run executes the full step plan; steps whose refs were
        recorded by an earlier run are skipped.

        Args:
            entity_id: Domain or mailbox id
            kind: Which store the id belongs to
            initiated_by: Acting user, None for system-initiated retries
            org_id: When given, the entity must belong to this org
            cancel: Optional cancellation signal checked between steps

        Raises:
            NotFoundError: Unknown entity
            ValidationError: Entity is not in a retryable status
            ConflictError: A run is already queued or running
            ProviderError: If a step failed again (state recorded)
        """
        if org_id is not None and initiated_by is not None:
            self._require_member(org_id, initiated_by)

        if kind == EntityKind.DOMAIN:
            domain = self._load_domain(entity_id, org_id)
            if domain.status not in RETRYABLE_DOMAIN_STATUSES:
                raise ValidationError(f"Domain {domain.domain} is {domain.status.value}, nothing to retry")
            steps = self._domain_steps(domain)
            run = self.domain_runs.create_run(domain.id, domain.organization_id, initiated_by)
            entity: Domain | Mailbox = domain
            executor = self._domain_executor
        else:
            mailbox = self._load_mailbox(entity_id, org_id)
            if mailbox.status not in RETRYABLE_MAILBOX_STATUSES:
                raise ValidationError(f"Mailbox {mailbox.full_email} is {mailbox.status.value}, nothing to retry")
            integration, platform = self._sending_platform_for(mailbox.organization_id)
            steps = plan_mailbox_steps(mailbox, self.mailbox_host, integration, platform)
            run = self.mailbox_runs.create_run(mailbox.id, mailbox.organization_id, initiated_by)
            entity = mailbox
            executor = self._mailbox_executor

        logger.info("Retrying provisioning of %s (run %s)", entity.key, run.id)
        self._record_audit(
            entity.organization_id,
            initiated_by,
            "provisioning.retry",
            kind.value,
            entity.id,
            {"run_id": run.id},
        )
        return executor.execute(run, entity, steps, cancel)

    def get_domain(self, domain_id: str, org_id: str, user_id: str | None = None) -> Domain:
        """
        Load a domain owned by org_id.

        Raises:
            NotAMemberError: If user_id is given and is not a member of the org
            NotFoundError: If the domain is missing or owned by another org
        """
        if user_id is not None:
            self._require_member(org_id, user_id)
        return self._load_domain(domain_id, org_id)

    def get_mailbox(self, mailbox_id: str, org_id: str, user_id: str | None = None) -> Mailbox:
        """Mailbox counterpart of get_domain."""
        if user_id is not None:
            self._require_member(org_id, user_id)
        return self._load_mailbox(mailbox_id, org_id)

    def list_runs(self, entity_id: str, kind: EntityKind = EntityKind.DOMAIN) -> list[Run]:
        """Runs for an entity, newest first."""
        return self._ledger(kind).list_runs(entity_id)

    def latest_run(self, entity_id: str, kind: EntityKind = EntityKind.DOMAIN) -> Run | None:
        return self._ledger(kind).latest_run(entity_id)

    def _ledger(self, kind: EntityKind) -> RunLedger:
        return self.domain_runs if kind == EntityKind.DOMAIN else self.mailbox_runs

    def _require_member(self, org_id: str, user_id: str) -> None:
        if not self.organizations.is_member(org_id, user_id):
            raise NotAMemberError("User is not a member of this organization")

    def _load_domain(self, domain_id: str, org_id: str | None) -> Domain:
        domain = self.domains.get(domain_id)
        if domain is None or (org_id is not None and domain.organization_id != org_id):
            raise NotFoundError("Domain not found or you do not have access")
        return domain

    def _load_mailbox(self, mailbox_id: str, org_id: str | None) -> Mailbox:
        mailbox = self.mailboxes.get(mailbox_id)
        if mailbox is None or (org_id is not None and mailbox.organization_id != org_id):
            raise NotFoundError("Mailbox not found or you do not have access")
        return mailbox

    def _domain_steps(self, domain: Domain) -> list[Step]:
        records = baseline_records(domain.domain, self.spf_include, self.dmarc_policy)
        return plan_domain_steps(domain, self.registrars, self.dns, records)

    def _sending_platform_for(
        self, org_id: str
    ) -> tuple[SendingIntegration | None, SendingPlatform | None]:
        integration = self.organizations.get_sending_integration(org_id)
        if integration is None:
            return None, None
        platform = self.sending_platforms.get(integration.platform)
        if platform is None:
            raise ValidationError(f"Unknown sending platform: {integration.platform}")
        return integration, platform

    def _emit_usage(self, org_id: str, code: str, related_refs: dict[str, Any]) -> None:
        """Best-effort usage event. Never fails the enclosing request."""
        try:
            self.usage.emit(org_id, code, 1, related_refs, datetime.now(timezone.utc))
        except Exception:
            logger.warning("Failed to create usage event %s for org %s", code, org_id, exc_info=True)

    def _record_audit(
        self,
        org_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any],
    ) -> None:
        try:
            self.audit.record(org_id, actor_user_id, action, target_type, target_id, metadata)
        except Exception:
            logger.warning("Failed to write audit log entry %s for %s", action, target_id, exc_info=True)
