"""
Unit tests for ProvisioningService.

Runs the service against in-memory stores and sandbox providers to verify:
- Domain provisioning per source provider
- Failure recording (entity error, run failed, refs preserved)
- Mailbox batches (per-mailbox runs, non-atomic failures)
- Retry runs (skip recorded steps, one active run per entity)
- Membership checks and compensation of partial writes
- Best-effort usage, audit and notification side channels
"""

import logging
import threading
from unittest.mock import patch

import pytest

from provisioner.domain.exceptions import (
    ConflictError,
    DnsProviderError,
    MailboxProviderError,
    NotAMemberError,
    NotFoundError,
    PersistenceError,
    RegistrarError,
    ValidationError,
)
from provisioner.domain.models import (
    DomainStatus,
    EntityKind,
    MailboxStatus,
    RunStatus,
    SendingIntegration,
)
from provisioner.domain.orchestrator import CANCELED_MESSAGE

from worlds import World


def failed_domain_id(world: World) -> str:
    """Id of the most recently audited domain (failed creates still audit)."""
    return next(e.target_id for e in reversed(world.audit.entries) if e.action == "domain.create")


def ready_domain(world: World, name: str = "example.com") -> str:
    outcome = world.service.create_domain(world.org_id, world.user_id, name, "external")
    assert outcome.entity.status == DomainStatus.READY
    return outcome.entity.id


class TestCreateDomain:
    """Tests for create_domain happy paths."""

    def test_external_domain_is_ready_without_order_id(self, world: World) -> None:
        """External domains skip registration and end up ready with zone refs."""
        outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        assert outcome.entity.status == DomainStatus.READY
        assert outcome.run.status == RunStatus.SUCCEEDED
        refs = outcome.entity.external_refs
        assert "order_id" not in refs
        assert refs["cloudflare_zone_id"]
        assert refs["cloudflare_nameservers"] == ["ns1.cloudflare.com", "ns2.cloudflare.com"]
        assert "error" not in refs

    def test_platform_registrar_domain_records_order_id(self, world: World) -> None:
        """Registrar-backed domains carry the registrar order id."""
        outcome = world.service.create_domain(
            world.org_id, world.user_id, "acme-mail.com", "platform-registrar"
        )

        assert outcome.entity.status == DomainStatus.READY
        assert outcome.entity.external_refs["order_id"].startswith("RC-")

    def test_imported_registrar_uses_its_own_registrar(self, world: World) -> None:
        """Imported domains go through the imported registrar adapter."""
        outcome = world.service.create_domain(
            world.org_id, world.user_id, "imported.io", "imported-registrar"
        )

        assert outcome.entity.external_refs["order_id"].startswith("NC-")

    def test_baseline_records_are_applied(self, world: World) -> None:
        """SPF and DMARC records are written to the new zone."""
        outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        zone_id = outcome.entity.external_refs["cloudflare_zone_id"]
        records = world.dns.records[zone_id]
        assert records[("TXT", "example.com")].content == "v=spf1 include:_spf.instantly.ai ~all"
        assert records[("TXT", "_dmarc.example.com")].content == "v=DMARC1; p=none;"

    def test_domain_name_is_normalized(self, world: World) -> None:
        """Whitespace, case and a trailing dot are removed."""
        outcome = world.service.create_domain(world.org_id, world.user_id, "  Example.COM. ", "external")

        assert outcome.entity.domain == "example.com"

    def test_tags_and_auto_renew_are_stored(self, world: World) -> None:
        """Tags and renewal preference are persisted on the domain."""
        outcome = world.service.create_domain(
            world.org_id, world.user_id, "example.com", "external", tags=["cold", "q3"], auto_renew=False
        )

        assert outcome.entity.tags == ["cold", "q3"]
        assert outcome.entity.auto_renew is False

    def test_usage_event_and_audit_entry_are_written(self, world: World) -> None:
        """One domain_created usage event and one domain.create audit entry."""
        outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        assert [e.code for e in world.usage.events] == ["domain_created"]
        event = world.usage.events[0]
        assert event.quantity == 1
        assert event.related_refs["domain_id"] == outcome.entity.id

        entry = world.audit.entries[0]
        assert entry.action == "domain.create"
        assert entry.actor_user_id == world.user_id
        assert entry.target_id == outcome.entity.id

    def test_run_records_initiator_and_timestamps(self, world: World) -> None:
        """The run keeps who started it and when it started and finished."""
        outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        assert outcome.run.initiated_by == world.user_id
        assert outcome.run.started_at is not None
        assert outcome.run.finished_at is not None
        assert outcome.run.error is None


class TestCreateDomainValidation:
    """Tests for create_domain input and membership validation."""

    def test_non_member_is_rejected_before_any_write(self, world: World) -> None:
        """A non-member gets NotAMemberError and nothing is recorded."""
        with pytest.raises(NotAMemberError):
            world.service.create_domain(world.org_id, world.outsider_id, "example.com", "external")

        assert world.usage.events == []
        assert world.audit.entries == []

    def test_not_a_member_is_a_validation_error(self, world: World) -> None:
        """Callers catching ValidationError also see membership failures."""
        with pytest.raises(ValidationError):
            world.service.create_domain("org-unknown", world.user_id, "example.com", "external")

    @pytest.mark.parametrize("name", ["", "no-tld", "bad_chars!.com", "-leading.com"])
    def test_invalid_domain_name_is_rejected(self, world: World, name: str) -> None:
        """Syntactically invalid names raise ValidationError."""
        with pytest.raises(ValidationError):
            world.service.create_domain(world.org_id, world.user_id, name, "external")

    @pytest.mark.parametrize("name", ["xn--e1afmkfd.xn--p1ai", "example.xn--fiqs8s"])
    def test_punycode_tld_is_accepted(self, world: World, name: str) -> None:
        """Internationalized TLDs in their xn-- form are valid."""
        outcome = world.service.create_domain(world.org_id, world.user_id, name, "external")

        assert outcome.entity.domain == name
        assert outcome.entity.status == DomainStatus.READY

    def test_numeric_tld_is_rejected(self, world: World) -> None:
        with pytest.raises(ValidationError):
            world.service.create_domain(world.org_id, world.user_id, "example.123", "external")

    def test_unknown_source_provider_is_rejected(self, world: World) -> None:
        """Only the three known source providers are accepted."""
        with pytest.raises(ValidationError, match="source provider"):
            world.service.create_domain(world.org_id, world.user_id, "example.com", "godaddy")

    def test_duplicate_domain_raises_conflict(self, world: World) -> None:
        """A domain name can only be recorded once."""
        world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        with pytest.raises(ConflictError):
            world.service.create_domain(world.org_id, world.user_id, "example.com", "external")


class TestDomainFailure:
    """Tests for provider failures during domain provisioning."""

    def test_dns_failure_records_error_and_keeps_no_zone(self, world_factory) -> None:
        """A zone failure leaves the domain in error without a zone id."""
        world = world_factory(failing_domains=(".zzz",))

        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")

        domain = world.domains.get(failed_domain_id(world))
        assert domain.status == DomainStatus.ERROR
        assert "cloudflare_zone_id" not in domain.external_refs
        assert "invalid or unsupported" in domain.external_refs["error"]

        (run,) = world.service.list_runs(domain.id)
        assert run.status == RunStatus.FAILED
        assert run.error == domain.external_refs["error"]

    def test_dns_failure_preserves_earlier_order_id(self, world_factory) -> None:
        """Refs written by steps before the failure survive it."""
        world = world_factory(failing_domains=(".zzz",))

        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "platform-registrar")

        domain = world.domains.get(failed_domain_id(world))
        assert set(domain.external_refs) == {"order_id", "error"}

    def test_registrar_failure_carries_reason(self, world_factory) -> None:
        """Registrar errors expose their reason and stop before DNS."""
        world = world_factory(registrar_failures={"taken.com": RegistrarError.UNAVAILABLE})

        with pytest.raises(RegistrarError) as exc_info:
            world.service.create_domain(world.org_id, world.user_id, "taken.com", "platform-registrar")

        assert exc_info.value.reason == RegistrarError.UNAVAILABLE
        domain = world.domains.get(failed_domain_id(world))
        assert set(domain.external_refs) == {"error"}
        assert world.dns.records == {}

    def test_failure_notifies_billing_email(self, world_factory, caplog) -> None:
        """A failed run sends a notification to the org's billing email."""
        world = world_factory(failing_domains=(".zzz",))

        with caplog.at_level(logging.WARNING), pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")

        assert "[PROVISIONING FAILED]" in caplog.text
        assert world.billing_email in caplog.text
        assert "bad-tld.zzz" in caplog.text

    def test_notifier_failure_does_not_mask_provider_error(self, world_factory) -> None:
        """A broken notifier never replaces the original error."""
        world = world_factory(failing_domains=(".zzz",))

        with patch.object(
            world.service.notifier, "notify_provisioning_failed", side_effect=RuntimeError("smtp down")
        ), pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")

        domain = world.domains.get(failed_domain_id(world))
        assert domain.status == DomainStatus.ERROR


class TestSideChannels:
    """Tests that usage and audit failures never fail a request."""

    def test_usage_failure_is_swallowed(self, world: World) -> None:
        """Provisioning completes when the usage sink raises."""
        with patch.object(world.usage, "emit", side_effect=RuntimeError("usage down")):
            outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        assert outcome.run.status == RunStatus.SUCCEEDED

    def test_audit_failure_is_swallowed(self, world: World) -> None:
        """Provisioning completes when the audit log raises."""
        with patch.object(world.audit, "record", side_effect=PersistenceError("audit down")):
            outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        assert outcome.entity.status == DomainStatus.READY


class TestCompensation:
    """Tests that partial entity/run writes are undone."""

    def test_run_write_failure_deletes_domain(self, world: World) -> None:
        """If the run cannot be written, the new domain is removed again."""
        with patch.object(
            world.domain_runs, "create_run", side_effect=PersistenceError("db down")
        ), patch.object(world.domains, "delete", wraps=world.domains.delete) as delete, pytest.raises(
            PersistenceError
        ):
            world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        delete.assert_called_once()
        (domain_id,) = delete.call_args[0]
        assert world.domains.get(domain_id) is None
        assert world.usage.events == []

    def test_domain_name_is_free_after_rollback(self, world: World) -> None:
        """A rolled-back domain can be created again."""
        with patch.object(world.domain_runs, "create_run", side_effect=PersistenceError("db down")), pytest.raises(
            PersistenceError
        ):
            world.service.create_domain(world.org_id, world.user_id, "example.com", "external")

        outcome = world.service.create_domain(world.org_id, world.user_id, "example.com", "external")
        assert outcome.entity.status == DomainStatus.READY

    def test_mailbox_run_write_failure_keeps_earlier_mailboxes(self, world: World) -> None:
        """A write failure mid-batch removes only the mailbox being created."""
        domain_id = ready_domain(world)
        real_create_run = world.mailbox_runs.create_run
        calls = {"n": 0}

        def flaky_create_run(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise PersistenceError("db down")
            return real_create_run(*args, **kwargs)

        with patch.object(world.mailbox_runs, "create_run", side_effect=flaky_create_run), pytest.raises(
            PersistenceError
        ):
            world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 3)

        created = [e.related_refs["mailbox_id"] for e in world.usage.events if e.code == "mailbox_created"]
        assert len(created) == 1
        assert world.mailboxes.get(created[0]).status == MailboxStatus.ACTIVE


class TestCreateMailboxes:
    """Tests for create_mailboxes."""

    def test_batch_creates_one_run_per_mailbox(self, world: World) -> None:
        """Every mailbox gets its own active entity and succeeded run."""
        domain_id = ready_domain(world)

        outcome = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 3)

        assert [m.full_email for m in outcome.mailboxes] == [
            "user1@example.com",
            "user2@example.com",
            "user3@example.com",
        ]
        assert all(m.status == MailboxStatus.ACTIVE for m in outcome.mailboxes)
        assert all(r.status == RunStatus.SUCCEEDED for r in outcome.runs)
        assert len({r.id for r in outcome.runs}) == 3
        assert all(m.external_refs["account_id"] for m in outcome.mailboxes)

    def test_name_patterns_drive_addresses(self, world: World) -> None:
        """Patterns are numbered from 1 and used for first and last names."""
        domain_id = ready_domain(world)

        outcome = world.service.create_mailboxes(
            world.org_id, world.user_id, domain_id, 2, first_name_pattern="sales", last_name_pattern="team"
        )

        first = outcome.mailboxes[0]
        assert first.full_email == "sales1@example.com"
        assert (first.first_name, first.last_name) == ("sales1", "team1")
        assert outcome.mailboxes[1].full_email == "sales2@example.com"

    def test_defaults_are_applied(self, world: World) -> None:
        """Daily limit and mailbox provider come from service defaults."""
        domain_id = ready_domain(world)

        outcome = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1)

        mailbox = outcome.mailboxes[0]
        assert mailbox.daily_limit == 50
        assert mailbox.source_provider == "mailbox-host"
        assert mailbox.domain_id == domain_id

    def test_batch_is_not_atomic(self, world_factory) -> None:
        """The third mailbox fails; the other four still succeed."""
        world = world_factory(failing_mailboxes=("user3@example.com",))
        domain_id = ready_domain(world)

        outcome = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 5)

        statuses = [r.status for r in outcome.runs]
        assert statuses.count(RunStatus.SUCCEEDED) == 4
        assert statuses.count(RunStatus.FAILED) == 1
        failed = outcome.mailboxes[2]
        assert failed.full_email == "user3@example.com"
        assert failed.status == MailboxStatus.ERROR
        assert set(failed.external_refs) == {"error"}
        assert outcome.runs[2].error == failed.external_refs["error"]

    def test_usage_event_per_mailbox(self, world: World) -> None:
        """One mailbox_created event of quantity 1 per mailbox."""
        domain_id = ready_domain(world)

        world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 3)

        events = [e for e in world.usage.events if e.code == "mailbox_created"]
        assert len(events) == 3
        assert all(e.quantity == 1 for e in events)

    def test_sending_platform_integration_adds_external_id(self, world_factory) -> None:
        """With an integration, mailboxes are added to the sending platform."""
        world = world_factory(integration=SendingIntegration(platform="instantly", api_key="key-1"))
        domain_id = ready_domain(world)

        outcome = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 2)

        for mailbox in outcome.mailboxes:
            assert mailbox.external_refs["external_id"].startswith("instantly-")

    def test_unknown_sending_platform_is_rejected_before_writes(self, world_factory) -> None:
        """An integration without an adapter fails before any mailbox exists."""
        world = world_factory(integration=SendingIntegration(platform="mystery", api_key="key-1"))
        domain_id = ready_domain(world)

        with pytest.raises(ValidationError, match="mystery"):
            world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 2)

        assert not [e for e in world.usage.events if e.code == "mailbox_created"]

    def test_domain_must_be_ready(self, world_factory) -> None:
        """Mailboxes cannot be created on a domain in error."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")

        with pytest.raises(ValidationError, match="ready"):
            world.service.create_mailboxes(world.org_id, world.user_id, failed_domain_id(world), 1)

    @pytest.mark.parametrize("count", [0, -1, 101])
    def test_count_out_of_bounds_is_rejected(self, world: World, count: int) -> None:
        """Count must be between 1 and the configured maximum."""
        domain_id = ready_domain(world)

        with pytest.raises(ValidationError):
            world.service.create_mailboxes(world.org_id, world.user_id, domain_id, count)

    def test_domain_of_another_org_is_not_found(self, world: World) -> None:
        """Domains are scoped to their organization."""
        domain_id = ready_domain(world)
        world.organizations.add_organization("org-2", members=[world.user_id])

        with pytest.raises(NotFoundError):
            world.service.create_mailboxes("org-2", world.user_id, domain_id, 1)

    def test_non_member_cannot_create_mailboxes(self, world: World) -> None:
        """Membership is checked before the domain is looked up."""
        domain_id = ready_domain(world)

        with pytest.raises(NotAMemberError):
            world.service.create_mailboxes(world.org_id, world.outsider_id, domain_id, 1)

    def test_duplicate_addresses_raise_conflict(self, world: World) -> None:
        """A second identical batch collides on the first address."""
        domain_id = ready_domain(world)
        world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1)

        with pytest.raises(ConflictError):
            world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1)

    def test_batch_is_audited_once(self, world: World) -> None:
        """One mailboxes.create audit entry per batch."""
        domain_id = ready_domain(world)

        world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 2)

        entries = [e for e in world.audit.entries if e.action == "mailboxes.create"]
        assert len(entries) == 1
        assert entries[0].metadata["count"] == 2


class TestRetryProvisioning:
    """Tests for retry_provisioning."""

    def test_retry_after_dns_failure_succeeds(self, world_factory) -> None:
        """A new run finishes the work and clears the error."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        world.dns.failing_domains.clear()

        outcome = world.service.retry_provisioning(domain_id, initiated_by=world.user_id, org_id=world.org_id)

        assert outcome.entity.status == DomainStatus.READY
        assert outcome.run.status == RunStatus.SUCCEEDED
        assert "error" not in outcome.entity.external_refs
        assert outcome.entity.external_refs["cloudflare_zone_id"]

        runs = world.service.list_runs(domain_id)
        assert [r.status for r in runs] == [RunStatus.SUCCEEDED, RunStatus.FAILED]

    def test_retry_skips_recorded_registration(self, world_factory) -> None:
        """The registrar is not called again when order_id is recorded."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "platform-registrar")
        domain_id = failed_domain_id(world)
        order_id = world.domains.get(domain_id).external_refs["order_id"]
        world.dns.failing_domains.clear()
        registrar = world.service.registrars["platform-registrar"]

        with patch.object(registrar, "register", wraps=registrar.register) as register:
            outcome = world.service.retry_provisioning(domain_id)

        register.assert_not_called()
        assert outcome.entity.external_refs["order_id"] == order_id

    def test_retry_failing_again_records_new_failure(self, world_factory) -> None:
        """A second failure fails the new run and re-raises."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)

        with pytest.raises(DnsProviderError):
            world.service.retry_provisioning(domain_id)

        runs = world.service.list_runs(domain_id)
        assert [r.status for r in runs] == [RunStatus.FAILED, RunStatus.FAILED]
        assert world.domains.get(domain_id).status == DomainStatus.ERROR

    def test_retry_of_ready_domain_is_rejected(self, world: World) -> None:
        """Nothing to retry on a ready domain."""
        domain_id = ready_domain(world)

        with pytest.raises(ValidationError, match="nothing to retry"):
            world.service.retry_provisioning(domain_id)

    def test_retry_while_run_in_flight_raises_conflict(self, world_factory) -> None:
        """Only one queued or running run may exist per entity."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        in_flight = world.domain_runs.create_run(domain_id, world.org_id, None)
        world.domain_runs.mark_running(in_flight.id)

        with pytest.raises(ConflictError):
            world.service.retry_provisioning(domain_id)

        assert len(world.service.list_runs(domain_id)) == 2

    def test_retry_unknown_entity_is_not_found(self, world: World) -> None:
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            world.service.retry_provisioning("missing-id")

    def test_retry_by_non_member_is_rejected(self, world_factory) -> None:
        """A user-initiated retry checks org membership."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)

        with pytest.raises(NotAMemberError):
            world.service.retry_provisioning(domain_id, initiated_by=world.outsider_id, org_id=world.org_id)

        assert len(world.service.list_runs(domain_id)) == 1

    def test_retry_failed_mailbox(self, world_factory) -> None:
        """Mailbox retries run the mailbox plan on a new run."""
        world = world_factory(failing_mailboxes=("user1@example.com",))
        domain_id = ready_domain(world)
        batch = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1)
        mailbox_id = batch.mailboxes[0].id
        world.mailbox_host.failing_emails.clear()

        outcome = world.service.retry_provisioning(mailbox_id, EntityKind.MAILBOX, initiated_by=world.user_id)

        assert outcome.entity.status == MailboxStatus.ACTIVE
        assert outcome.entity.external_refs["account_id"]
        runs = world.service.list_runs(mailbox_id, EntityKind.MAILBOX)
        assert [r.status for r in runs] == [RunStatus.SUCCEEDED, RunStatus.FAILED]

    def test_retry_mailbox_failing_again_raises(self, world_factory) -> None:
        """Mailbox retry failures propagate to the caller."""
        world = world_factory(failing_mailboxes=("user1@example.com",))
        domain_id = ready_domain(world)
        batch = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1)

        with pytest.raises(MailboxProviderError):
            world.service.retry_provisioning(batch.mailboxes[0].id, EntityKind.MAILBOX)

    def test_retry_is_audited_with_run_id(self, world_factory) -> None:
        """Each retry writes a provisioning.retry audit entry."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        world.dns.failing_domains.clear()

        outcome = world.service.retry_provisioning(domain_id, initiated_by=world.user_id)

        entry = world.audit.entries[-1]
        assert entry.action == "provisioning.retry"
        assert entry.target_type == "domain"
        assert entry.metadata == {"run_id": outcome.run.id}

    def test_canceled_retry_marks_run_canceled(self, world_factory) -> None:
        """A set cancel event stops the run before the first step."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        cancel = threading.Event()
        cancel.set()

        outcome = world.service.retry_provisioning(domain_id, cancel=cancel)

        assert outcome.run.status == RunStatus.CANCELED
        assert outcome.entity.status == DomainStatus.ERROR
        assert outcome.entity.external_refs["error"] == CANCELED_MESSAGE

    def test_store_outage_during_retry_leaves_domain_retryable(self, world_factory) -> None:
        """A store failure mid-run still ends the run, so a later retry can proceed."""
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        world.dns.failing_domains.clear()

        with patch.object(world.domains, "transition_status", side_effect=PersistenceError("db down")):
            with pytest.raises(PersistenceError):
                world.service.retry_provisioning(domain_id)

        assert [r.status for r in world.service.list_runs(domain_id)] == [RunStatus.FAILED, RunStatus.FAILED]

        outcome = world.service.retry_provisioning(domain_id)

        assert outcome.run.status == RunStatus.SUCCEEDED
        assert outcome.entity.status == DomainStatus.READY


class TestLookups:
    """Tests for org-scoped entity lookups."""

    def test_get_domain_scoped_to_org(self, world: World) -> None:
        domain_id = ready_domain(world)

        assert world.service.get_domain(domain_id, world.org_id).id == domain_id
        with pytest.raises(NotFoundError):
            world.service.get_domain(domain_id, "org-2")

    def test_get_mailbox_scoped_to_org(self, world: World) -> None:
        domain_id = ready_domain(world)
        mailbox = world.service.create_mailboxes(world.org_id, world.user_id, domain_id, 1).mailboxes[0]

        found = world.service.get_mailbox(mailbox.id, world.org_id)

        assert found.full_email == "user1@example.com"
        assert found.status == MailboxStatus.ACTIVE
        with pytest.raises(NotFoundError):
            world.service.get_mailbox(mailbox.id, "org-2")

    def test_lookup_with_user_checks_membership(self, world: World) -> None:
        domain_id = ready_domain(world)

        with pytest.raises(NotAMemberError):
            world.service.get_domain(domain_id, world.org_id, world.outsider_id)
        assert world.service.get_domain(domain_id, world.org_id, world.user_id).id == domain_id

    def test_latest_run_is_newest(self, world_factory) -> None:
        world = world_factory(failing_domains=(".zzz",))
        with pytest.raises(DnsProviderError):
            world.service.create_domain(world.org_id, world.user_id, "bad-tld.zzz", "external")
        domain_id = failed_domain_id(world)
        world.dns.failing_domains.clear()
        retried = world.service.retry_provisioning(domain_id)

        latest = world.service.latest_run(domain_id)

        assert latest.id == retried.run.id
        assert latest.status == RunStatus.SUCCEEDED
        assert world.service.latest_run("missing", EntityKind.MAILBOX) is None
