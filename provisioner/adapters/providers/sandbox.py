"""
Sandbox provider adapters - Simulated registrar, DNS, mailbox host and
sending platforms.

These adapters implement the provider ports without network access. They
log what they do, keep provider-side state in memory, and behave like a
well-mannered vendor on repeat calls: registering a domain we already hold,
creating a zone that exists, or adding a mailbox twice returns the
existing identifier instead of failing.

Failure injection: each adapter accepts the names it should reject. DNS
and registrar entries starting with a dot match a whole TLD (".zzz").

Answers are built in the vendor's response shape and passed through the
same payload models a network adapter would use. Those models therefore
only see well-formed data here; malformed and full vendor responses are
exercised against the models directly.
"""

import logging
import threading
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from provisioner.domain.exceptions import (
    DnsProviderError,
    MailboxProviderError,
    RegistrarError,
    SendingPlatformError,
)
from provisioner.domain.models import (
    ApiKeyValidation,
    DnsRecord,
    DnsZone,
    MailboxAccount,
    MailboxProfile,
    RegistrationResult,
    SendingPlatformAccount,
)

from .payloads import (
    ApiKeyCheckPayload,
    MailboxAccountPayload,
    RegistrarOrderPayload,
    SendingAccountPayload,
    ZonePayload,
    validate_payload,
)

logger = logging.getLogger(__name__)

SENDING_PLATFORM_NAMES = ("instantly", "smartlead", "emailbison", "plusvibe")


def _matches(name: str, patterns: Iterable[str]) -> bool:
    return any(name == p or (p.startswith(".") and name.endswith(p)) for p in patterns)


def _identifier(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SandboxRegistrar:
    """
    Implements Registrar protocol.

    Args:
        name: Registrar label used in logs and error messages
        order_prefix: Prefix for generated order ids
        failures: Domain (or ".tld") -> RegistrarError reason
    """

    def __init__(self, name: str, order_prefix: str, failures: Mapping[str, str] | None = None) -> None:
        self.name = name
        self._order_prefix = order_prefix
        self.failures = dict(failures or {})
        self._lock = threading.Lock()
        self._orders: dict[str, str] = {}

    def register(self, domain_name: str) -> RegistrationResult:
        logger.info("[SANDBOX] %s: Registering domain %s", self.name, domain_name)
        for pattern, reason in self.failures.items():
            if _matches(domain_name, [pattern]):
                raise RegistrarError(f"{self.name}: registration of {domain_name} {reason}", reason=reason)

        with self._lock:
            payload: dict[str, Any] = {
                "orderId": self._orders.setdefault(domain_name, _identifier(self._order_prefix)),
                "success": True,
            }

        result = validate_payload(RegistrarOrderPayload, payload, RegistrarError, self.name).to_result()
        logger.info("[SANDBOX] %s: Domain %s registered with order ID %s", self.name, domain_name, result.order_id)
        return result


class SandboxDnsProvider:
    """Implements DnsProvider protocol with Cloudflare-shaped payloads."""

    NAMESERVERS = ("ns1.cloudflare.com", "ns2.cloudflare.com")

    def __init__(self, failing_domains: Iterable[str] = ()) -> None:
        self.failing_domains = set(failing_domains)
        self._lock = threading.Lock()
        self._zones: dict[str, str] = {}
        self.records: dict[str, dict[tuple[str, str], DnsRecord]] = {}

    def create_zone(self, domain_name: str) -> DnsZone:
        logger.info("[SANDBOX] Cloudflare: Creating zone for %s", domain_name)
        if _matches(domain_name, self.failing_domains):
            raise DnsProviderError(f"Cloudflare rejected zone {domain_name}: invalid or unsupported domain")

        with self._lock:
            if domain_name in self._zones:
                logger.info("[SANDBOX] Cloudflare: Zone for %s already exists", domain_name)
            zone_id = self._zones.setdefault(domain_name, _identifier("cf-zone"))
            self.records.setdefault(zone_id, {})

        payload = {"id": zone_id, "name": domain_name, "name_servers": list(self.NAMESERVERS)}
        return validate_payload(ZonePayload, payload, DnsProviderError, "Cloudflare").to_result()

    def apply_records(self, zone_id: str, records: Sequence[DnsRecord]) -> None:
        logger.info("[SANDBOX] Cloudflare: Updating %d DNS record(s) for zone %s", len(records), zone_id)
        with self._lock:
            zone_records = self.records.get(zone_id)
            if zone_records is None:
                raise DnsProviderError(f"Cloudflare zone {zone_id} not found")
            for record in records:
                zone_records[(record.type, record.name)] = record


class SandboxMailboxHost:
    """Implements MailboxHost protocol."""

    def __init__(self, failing_emails: Iterable[str] = ()) -> None:
        self.failing_emails = set(failing_emails)
        self._lock = threading.Lock()
        self._accounts: dict[str, str] = {}

    def create_account(self, mailbox_id: str, profile: MailboxProfile) -> MailboxAccount:
        logger.info("[SANDBOX] Mailbox host: Creating mailbox %s (%s)", profile.email, mailbox_id)
        if profile.email in self.failing_emails:
            raise MailboxProviderError(f"Mailbox host could not create {profile.email}")

        with self._lock:
            payload = {"userId": self._accounts.setdefault(profile.email, _identifier("mbx-user"))}

        return validate_payload(MailboxAccountPayload, payload, MailboxProviderError, "Mailbox host").to_result()


class SandboxSendingPlatform:
    """
    Implements SendingPlatform protocol.

    Args:
        name: Platform name (instantly, smartlead, emailbison, plusvibe)
        valid_keys: Accepted API keys; None accepts any non-empty key
        failing_emails: Addresses the platform refuses
    """

    def __init__(
        self,
        name: str,
        valid_keys: Iterable[str] | None = None,
        failing_emails: Iterable[str] = (),
    ) -> None:
        self.name = name
        self._valid_keys = frozenset(valid_keys) if valid_keys is not None else None
        self.failing_emails = set(failing_emails)
        self._lock = threading.Lock()
        self._accounts: dict[str, str] = {}

    def validate_api_key(self, api_key: str, base_url: str | None = None) -> ApiKeyValidation:
        if not api_key:
            payload: dict[str, Any] = {"valid": False, "error": "API key is required"}
        elif self._valid_keys is not None and api_key not in self._valid_keys:
            payload = {"valid": False, "error": f"{self.name} rejected the API key"}
        else:
            payload = {"valid": True}
        return validate_payload(ApiKeyCheckPayload, payload, SendingPlatformError, self.name).to_result()

    def add_mailbox(
        self, api_key: str, profile: MailboxProfile, base_url: str | None = None
    ) -> SendingPlatformAccount:
        logger.info("[SANDBOX] %s: Adding mailbox %s", self.name, profile.email)
        check = self.validate_api_key(api_key, base_url)
        if not check.valid:
            raise SendingPlatformError(check.error or f"{self.name} rejected the API key")
        if profile.email in self.failing_emails:
            raise SendingPlatformError(f"{self.name} refused mailbox {profile.email}")

        with self._lock:
            payload = {"id": self._accounts.setdefault(profile.email, _identifier(self.name))}

        return validate_payload(SendingAccountPayload, payload, SendingPlatformError, self.name).to_result()


def build_sending_platforms(names: Iterable[str] = SENDING_PLATFORM_NAMES) -> dict[str, SandboxSendingPlatform]:
    """Registry of sending platform adapters keyed by platform name."""
    return {name: SandboxSendingPlatform(name) for name in names}
