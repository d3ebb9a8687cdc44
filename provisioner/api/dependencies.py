"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting the provisioning
service, with its repositories and provider adapters, into routes.
Provider adapters are built once in the app lifespan and read from
``app.state`` alongside the connection pool.
"""

from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request, status
from psycopg_pool import ConnectionPool

from provisioner.adapters.notifications.console import ConsoleFailureNotifier
from provisioner.adapters.providers.sandbox import (
    SandboxDnsProvider,
    SandboxMailboxHost,
    SandboxRegistrar,
    build_sending_platforms,
)
from provisioner.adapters.repository.postgres import (
    PostgresDomainRepository,
    PostgresMailboxRepository,
    PostgresRunLedger,
)
from provisioner.adapters.repository.postgres_directory import (
    PostgresAuditLog,
    PostgresOrganizationDirectory,
    PostgresUsageEventSink,
)
from provisioner.config.settings import Settings, get_settings
from provisioner.domain.exceptions import RegistrarError
from provisioner.domain.models import EntityKind, SourceProvider
from provisioner.domain.ports import DnsProvider, FailureNotifier, MailboxHost, Registrar, SendingPlatform
from provisioner.domain.provisioning import ProvisioningService


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ProviderAdapters:
    """Provider adapters shared by every request. They hold provider-side state."""

    notifier: FailureNotifier
    registrars: Mapping[str, Registrar]
    dns: DnsProvider
    mailbox_host: MailboxHost
    sending_platforms: Mapping[str, SendingPlatform]


def build_provider_adapters(settings: Settings) -> ProviderAdapters:
    """Build the provider adapters, applying sandbox failure injection from settings."""
    failing_domains = _split(settings.sandbox_failing_domains)
    return ProviderAdapters(
        notifier=ConsoleFailureNotifier(),
        registrars={
            SourceProvider.PLATFORM_REGISTRAR.value: SandboxRegistrar(
                "ResellerClub",
                "RC",
                {name: RegistrarError.REJECTED for name in failing_domains},
            ),
            SourceProvider.IMPORTED_REGISTRAR.value: SandboxRegistrar("Namecheap", "NC"),
        },
        dns=SandboxDnsProvider(failing_domains),
        mailbox_host=SandboxMailboxHost(_split(settings.sandbox_failing_mailboxes)),
        sending_platforms=build_sending_platforms(),
    )


def get_pool(request: Request) -> ConnectionPool:
    """
    Get connection pool from app state.

    The pool is created during app lifespan startup and stored in app.state.
    """
    return request.app.state.pool


def get_provider_adapters(request: Request) -> ProviderAdapters:
    """Get provider adapters from app state (built during lifespan startup)."""
    return request.app.state.providers


def get_provisioning_service(request: Request) -> ProvisioningService:
    """
    Create provisioning service with injected dependencies.

    Wires the Postgres stores and ledgers with the provider adapters.
    """
    pool = get_pool(request)
    providers = get_provider_adapters(request)
    settings = get_settings()
    return ProvisioningService(
        domains=PostgresDomainRepository(pool),
        mailboxes=PostgresMailboxRepository(pool),
        domain_runs=PostgresRunLedger(pool, EntityKind.DOMAIN),
        mailbox_runs=PostgresRunLedger(pool, EntityKind.MAILBOX),
        organizations=PostgresOrganizationDirectory(pool),
        usage=PostgresUsageEventSink(pool),
        audit=PostgresAuditLog(pool),
        notifier=providers.notifier,
        registrars=providers.registrars,
        dns=providers.dns,
        mailbox_host=providers.mailbox_host,
        sending_platforms=providers.sending_platforms,
        spf_include=settings.spf_include,
        dmarc_policy=settings.dmarc_policy,
        default_mailbox_provider=settings.default_mailbox_provider,
        default_daily_limit=settings.default_daily_limit,
        max_mailboxes_per_request=settings.max_mailboxes_per_request,
    )


def get_actor_id(x_user_id: str | None = Header(default=None)) -> str:
    """
    Acting user id.

    Authentication happens upstream; the gateway forwards the verified
    user id in the X-User-Id header.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id
