"""
Step plans - Ordered provider calls per entity type and source provider.

Domain plans:
    platform-registrar: register -> create zone -> apply baseline records
    imported-registrar: register -> create zone -> apply baseline records
    external:           create zone -> apply baseline records

Mailbox plan:
    create mailbox-host account -> add to sending platform (if configured)

A step that produces identifiers is skipped when every key it produces is
already in the entity's external_refs. This is what makes a retry run safe
to execute from the top: progress recorded by an earlier run is reused
instead of being requested from the provider a second time. Record
application produces no keys and always runs; DNS adapters upsert.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ValidationError
from .models import (
    REF_ACCOUNT_ID,
    REF_EXTERNAL_ID,
    REF_NAMESERVERS,
    REF_ORDER_ID,
    REF_ZONE_ID,
    DnsRecord,
    Domain,
    Mailbox,
    MailboxProfile,
    SendingIntegration,
    SourceProvider,
)
from .ports import DnsProvider, MailboxHost, Registrar, SendingPlatform

StepAction = Callable[[Mapping[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class Step:
    """
    One provider call in a run.

    The action receives the refs collected so far and returns the refs
    it produced. It either returns or raises a ProviderError.
    """

    name: str
    action: StepAction
    produces: tuple[str, ...] = field(default_factory=tuple)

    def already_done(self, refs: Mapping[str, Any]) -> bool:
        return bool(self.produces) and all(key in refs for key in self.produces)


def baseline_records(domain_name: str, spf_include: str, dmarc_policy: str) -> list[DnsRecord]:
    """SPF on the apex and DMARC on _dmarc.<domain>."""
    return [
        DnsRecord(type="TXT", name=domain_name, content=f"v=spf1 include:{spf_include} ~all"),
        DnsRecord(type="TXT", name=f"_dmarc.{domain_name}", content=f"v=DMARC1; p={dmarc_policy};"),
    ]


def plan_domain_steps(
    domain: Domain,
    registrars: Mapping[str, Registrar],
    dns: DnsProvider,
    records: list[DnsRecord],
) -> list[Step]:
    """
    Build the step list for a domain run.

    Raises:
        ValidationError: If the source provider needs a registrar that
            is not configured
    """
    steps: list[Step] = []

    if domain.source_provider != SourceProvider.EXTERNAL:
        registrar = registrars.get(SourceProvider(domain.source_provider).value)
        if registrar is None:
            raise ValidationError(f"No registrar configured for {domain.source_provider}")

        def register(refs: Mapping[str, Any]) -> dict[str, Any]:
            result = registrar.register(domain.domain)
            return {REF_ORDER_ID: result.order_id}

        steps.append(Step("register", register, (REF_ORDER_ID,)))

    def create_zone(refs: Mapping[str, Any]) -> dict[str, Any]:
        zone = dns.create_zone(domain.domain)
        return {REF_ZONE_ID: zone.zone_id, REF_NAMESERVERS: list(zone.nameservers)}

    def apply_records(refs: Mapping[str, Any]) -> dict[str, Any]:
        dns.apply_records(refs[REF_ZONE_ID], records)
        return {}

    steps.append(Step("create_zone", create_zone, (REF_ZONE_ID, REF_NAMESERVERS)))
    steps.append(Step("apply_records", apply_records))
    return steps


def plan_mailbox_steps(
    mailbox: Mailbox,
    host: MailboxHost,
    integration: SendingIntegration | None,
    sending_platform: SendingPlatform | None,
) -> list[Step]:
    """Build the step list for a mailbox run."""
    profile = MailboxProfile(
        email=mailbox.full_email,
        first_name=mailbox.first_name or "",
        last_name=mailbox.last_name or "",
    )

    def create_account(refs: Mapping[str, Any]) -> dict[str, Any]:
        account = host.create_account(mailbox.id, profile)
        return {REF_ACCOUNT_ID: account.account_id}

    steps = [Step("create_account", create_account, (REF_ACCOUNT_ID,))]

    if integration is not None and sending_platform is not None:

        def add_to_sending_platform(refs: Mapping[str, Any]) -> dict[str, Any]:
            account = sending_platform.add_mailbox(integration.api_key, profile, integration.base_url)
            return {REF_EXTERNAL_ID: account.external_id}

        steps.append(Step("add_to_sending_platform", add_to_sending_platform, (REF_EXTERNAL_ID,)))

    return steps
