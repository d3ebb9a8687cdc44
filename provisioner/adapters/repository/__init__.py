"""Repository adapters - Database and in-memory implementations."""

from .memory import (
    InMemoryAuditLog,
    InMemoryDomainRepository,
    InMemoryMailboxRepository,
    InMemoryOrganizationDirectory,
    InMemoryRunLedger,
    InMemoryUsageEventSink,
)
from .postgres import PostgresDomainRepository, PostgresMailboxRepository, PostgresRunLedger, run_migrations
from .postgres_directory import PostgresAuditLog, PostgresOrganizationDirectory, PostgresUsageEventSink

__all__ = [
    "InMemoryAuditLog",
    "InMemoryDomainRepository",
    "InMemoryMailboxRepository",
    "InMemoryOrganizationDirectory",
    "InMemoryRunLedger",
    "InMemoryUsageEventSink",
    "PostgresAuditLog",
    "PostgresDomainRepository",
    "PostgresMailboxRepository",
    "PostgresOrganizationDirectory",
    "PostgresRunLedger",
    "PostgresUsageEventSink",
    "run_migrations",
]
