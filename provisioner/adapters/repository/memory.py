"""
In-memory repository adapters - Process-local implementations of the ports.

Used for local development and tests. They honour the same contracts as
the PostgreSQL adapters: append-only ref merges, one active run per
entity, immutable terminal runs, and snapshot returns (callers receive
copies, never the stored objects).
"""

import copy
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from provisioner.domain.exceptions import ConflictError, NotFoundError
from provisioner.domain.models import (
    ACTIVE_RUN_STATUSES,
    REF_ERROR,
    Domain,
    DomainStatus,
    EntityKind,
    Mailbox,
    MailboxStatus,
    Run,
    RunStatus,
    SendingIntegration,
    SourceProvider,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _merge_refs(existing: dict[str, Any], merged: dict[str, Any]) -> dict[str, Any]:
    """Existing keys win."""
    return {**merged, **existing}


class InMemoryDomainRepository:
    """Implements DomainRepository protocol with a dict guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._domains: dict[str, Domain] = {}

    def create_domain(
        self,
        org_id: str,
        domain: str,
        source_provider: SourceProvider,
        tags: Sequence[str],
        auto_renew: bool,
    ) -> Domain:
        with self._lock:
            if any(d.domain == domain for d in self._domains.values()):
                raise ConflictError(f"Create domain {domain}: already exists")
            record = Domain(
                id=str(uuid.uuid4()),
                organization_id=org_id,
                domain=domain,
                status=DomainStatus.PENDING,
                source_provider=SourceProvider(source_provider),
                tags=list(tags),
                auto_renew=auto_renew,
                external_refs={},
                created_at=_now(),
            )
            self._domains[record.id] = record
            return copy.deepcopy(record)

    def get(self, entity_id: str) -> Domain | None:
        with self._lock:
            record = self._domains.get(entity_id)
            return copy.deepcopy(record) if record else None

    def transition_status(
        self, entity_id: str, status: DomainStatus, merged_refs: dict[str, Any]
    ) -> Domain:
        with self._lock:
            record = self._require(entity_id)
            record.status = DomainStatus(status)
            record.external_refs = _merge_refs(record.external_refs, copy.deepcopy(merged_refs))
            return copy.deepcopy(record)

    def reopen(self, entity_id: str, status: DomainStatus) -> Domain:
        with self._lock:
            record = self._require(entity_id)
            record.status = DomainStatus(status)
            record.external_refs.pop(REF_ERROR, None)
            return copy.deepcopy(record)

    def delete(self, entity_id: str) -> None:
        with self._lock:
            self._domains.pop(entity_id, None)

    def _require(self, entity_id: str) -> Domain:
        record = self._domains.get(entity_id)
        if record is None:
            raise NotFoundError(f"Domain {entity_id} not found")
        return record


class InMemoryMailboxRepository:
    """Implements MailboxRepository protocol with a dict guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mailboxes: dict[str, Mailbox] = {}

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
        with self._lock:
            if any(m.full_email == full_email for m in self._mailboxes.values()):
                raise ConflictError(f"Create mailbox {full_email}: already exists")
            record = Mailbox(
                id=str(uuid.uuid4()),
                organization_id=org_id,
                domain_id=domain_id,
                full_email=full_email,
                status=MailboxStatus.PROVISIONING,
                source_provider=source_provider,
                first_name=first_name,
                last_name=last_name,
                daily_limit=daily_limit,
                external_refs={},
                created_at=_now(),
            )
            self._mailboxes[record.id] = record
            return copy.deepcopy(record)

    def get(self, entity_id: str) -> Mailbox | None:
        with self._lock:
            record = self._mailboxes.get(entity_id)
            return copy.deepcopy(record) if record else None

    def transition_status(
        self, entity_id: str, status: MailboxStatus, merged_refs: dict[str, Any]
    ) -> Mailbox:
        with self._lock:
            record = self._require(entity_id)
            record.status = MailboxStatus(status)
            record.external_refs = _merge_refs(record.external_refs, copy.deepcopy(merged_refs))
            return copy.deepcopy(record)

    def reopen(self, entity_id: str, status: MailboxStatus) -> Mailbox:
        with self._lock:
            record = self._require(entity_id)
            record.status = MailboxStatus(status)
            record.external_refs.pop(REF_ERROR, None)
            return copy.deepcopy(record)

    def delete(self, entity_id: str) -> None:
        with self._lock:
            self._mailboxes.pop(entity_id, None)

    def _require(self, entity_id: str) -> Mailbox:
        record = self._mailboxes.get(entity_id)
        if record is None:
            raise NotFoundError(f"Mailbox {entity_id} not found")
        return record


class InMemoryRunLedger:
    """Implements RunLedger protocol for one entity kind."""

    def __init__(self, kind: EntityKind) -> None:
        self._kind = EntityKind(kind)
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}

    def create_run(self, entity_id: str, org_id: str, initiated_by: str | None) -> Run:
        with self._lock:
            if any(r.entity_id == entity_id and r.status in ACTIVE_RUN_STATUSES for r in self._runs.values()):
                raise ConflictError(
                    f"A {self._kind.value} run is already queued or running for {entity_id}"
                )
            run = Run(
                id=str(uuid.uuid4()),
                kind=self._kind,
                entity_id=entity_id,
                organization_id=org_id,
                status=RunStatus.QUEUED,
                initiated_by=initiated_by,
                created_at=_now(),
            )
            # Insertion order breaks created_at ties in list_runs
            self._runs[run.id] = run
            return replace(run)

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            run = self._runs.get(run_id)
            return replace(run) if run else None

    def list_runs(self, entity_id: str) -> list[Run]:
        with self._lock:
            runs = [replace(r) for r in self._runs.values() if r.entity_id == entity_id]
        return list(reversed(runs))

    def latest_run(self, entity_id: str) -> Run | None:
        runs = self.list_runs(entity_id)
        return runs[0] if runs else None

    def mark_running(self, run_id: str) -> Run:
        with self._lock:
            run = self._require(run_id)
            if run.status == RunStatus.RUNNING:
                raise ConflictError(f"Run {run_id} is already running")
            if run.status == RunStatus.QUEUED:
                run.status = RunStatus.RUNNING
                run.started_at = _now()
            return replace(run)

    def mark_succeeded(self, run_id: str) -> Run:
        return self._finish(run_id, RunStatus.SUCCEEDED, None)

    def mark_failed(self, run_id: str, error: str) -> Run:
        return self._finish(run_id, RunStatus.FAILED, error)

    def mark_canceled(self, run_id: str) -> Run:
        return self._finish(run_id, RunStatus.CANCELED, None)

    def delete(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def _finish(self, run_id: str, status: RunStatus, error: str | None) -> Run:
        with self._lock:
            run = self._require(run_id)
            if run.status in ACTIVE_RUN_STATUSES:
                run.status = status
                run.error = error
                run.finished_at = _now()
            return replace(run)

    def _require(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run


@dataclass
class InMemoryOrganization:
    billing_email: str | None = None
    members: set[str] = field(default_factory=set)
    integration: SendingIntegration | None = None


class InMemoryOrganizationDirectory:
    """Implements OrganizationDirectory protocol."""

    def __init__(self) -> None:
        self._orgs: dict[str, InMemoryOrganization] = {}

    def add_organization(
        self,
        org_id: str,
        billing_email: str | None = None,
        members: Sequence[str] = (),
        integration: SendingIntegration | None = None,
    ) -> None:
        self._orgs[org_id] = InMemoryOrganization(billing_email, set(members), integration)

    def is_member(self, org_id: str, user_id: str) -> bool:
        org = self._orgs.get(org_id)
        return org is not None and user_id in org.members

    def get_billing_email(self, org_id: str) -> str | None:
        org = self._orgs.get(org_id)
        return org.billing_email if org else None

    def get_sending_integration(self, org_id: str) -> SendingIntegration | None:
        org = self._orgs.get(org_id)
        return org.integration if org else None


@dataclass
class UsageEvent:
    org_id: str
    code: str
    quantity: int
    related_refs: dict[str, Any]
    effective_at: datetime


class InMemoryUsageEventSink:
    """Implements UsageEventSink protocol by collecting events in a list."""

    def __init__(self) -> None:
        self.events: list[UsageEvent] = []

    def emit(
        self,
        org_id: str,
        code: str,
        quantity: int,
        related_refs: dict[str, Any],
        effective_at: datetime,
    ) -> None:
        self.events.append(UsageEvent(org_id, code, quantity, dict(related_refs), effective_at))


@dataclass
class AuditEntry:
    org_id: str
    actor_user_id: str | None
    action: str
    target_type: str
    target_id: str
    metadata: dict[str, Any]


class InMemoryAuditLog:
    """Implements AuditLog protocol by collecting entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def record(
        self,
        org_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any],
    ) -> None:
        self.entries.append(AuditEntry(org_id, actor_user_id, action, target_type, target_id, dict(metadata)))
