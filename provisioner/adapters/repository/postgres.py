"""
PostgreSQL repository adapters - Entity store and run ledger.

This module provides the PostgreSQL implementations of the domain's
DomainRepository, MailboxRepository and RunLedger ports using psycopg3
with raw SQL.

Consistency Design:
-------------------
1. **Append-only refs**: transition_status merges with ``new || existing``.
   In jsonb concatenation the right operand wins, so keys already present
   are never overwritten by a later step.

2. **One active run per entity**: a partial unique index on
   ``(entity_id) WHERE status IN ('queued', 'running')`` makes a second
   concurrent create_run fail with UniqueViolation, mapped to ConflictError.

3. **Immutable terminal runs**: every mark_* UPDATE is guarded by
   ``WHERE status IN (...)``; when nothing matches, the stored run is
   returned unchanged.

4. **Snapshots**: every write uses RETURNING so callers observe exactly
   what was persisted.
"""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any
from uuid import UUID

import psycopg
from psycopg import sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from provisioner.domain.exceptions import ConflictError, NotFoundError, PersistenceError
from provisioner.domain.models import (
    REF_ERROR,
    Domain,
    DomainStatus,
    EntityKind,
    Mailbox,
    MailboxStatus,
    Run,
    RunStatus,
    SourceProvider,
)

logger = logging.getLogger(__name__)

_DOMAIN_COLUMNS = "id, organization_id, domain, status, source_provider, tags, auto_renew, external_refs, created_at"
_MAILBOX_COLUMNS = (
    "id, organization_id, domain_id, full_email, first_name, last_name, status, "
    "source_provider, daily_limit, external_refs, created_at"
)

# Run ledger table and entity column, by entity kind
_RUN_TABLES = {
    EntityKind.DOMAIN: ("domain_runs", "domain_id"),
    EntityKind.MAILBOX: ("mailbox_runs", "mailbox_id"),
}


def as_uuid(value: str) -> UUID | None:
    """Parse an id, returning None for anything that is not a UUID."""
    try:
        return UUID(str(value))
    except ValueError:
        return None


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """
    Map psycopg errors to domain errors.

    UniqueViolation becomes ConflictError, any other database error
    becomes PersistenceError.
    """
    try:
        yield
    except UniqueViolation as e:
        raise ConflictError(f"{action}: already exists") from e
    except psycopg.Error as e:
        logger.error(f"{action} failed: {e}")
        raise PersistenceError(f"{action} failed") from e


def _domain_from_row(row: dict[str, Any]) -> Domain:
    return Domain(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        domain=row["domain"],
        status=DomainStatus(row["status"]),
        source_provider=SourceProvider(row["source_provider"]),
        tags=list(row["tags"] or []),
        auto_renew=row["auto_renew"],
        external_refs=dict(row["external_refs"] or {}),
        created_at=row["created_at"],
    )


def _mailbox_from_row(row: dict[str, Any]) -> Mailbox:
    return Mailbox(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        domain_id=str(row["domain_id"]),
        full_email=row["full_email"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        status=MailboxStatus(row["status"]),
        source_provider=row["source_provider"],
        daily_limit=row["daily_limit"],
        external_refs=dict(row["external_refs"] or {}),
        created_at=row["created_at"],
    )


class PostgresDomainRepository:
    """
    Implements DomainRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_domain(
        self,
        org_id: str,
        domain: str,
        source_provider: SourceProvider,
        tags: Sequence[str],
        auto_renew: bool,
    ) -> Domain:
        query = f"""
            INSERT INTO domains (organization_id, domain, status, source_provider, tags, auto_renew, external_refs)
            VALUES (%s, %s, %s, %s, %s, %s, '{{}}'::jsonb)
            RETURNING {_DOMAIN_COLUMNS}
        """
        params = (
            org_id,
            domain,
            DomainStatus.PENDING.value,
            SourceProvider(source_provider).value,
            list(tags),
            auto_renew,
        )
        with translate_errors(f"Create domain {domain}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                conn.commit()
        return _domain_from_row(row)

    def get(self, entity_id: str) -> Domain | None:
        domain_id = as_uuid(entity_id)
        if domain_id is None:
            return None
        with translate_errors(f"Fetch domain {entity_id}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(f"SELECT {_DOMAIN_COLUMNS} FROM domains WHERE id = %s", (domain_id,))
                row = cursor.fetchone()
        return _domain_from_row(row) if row else None

    def transition_status(
        self, entity_id: str, status: DomainStatus, merged_refs: dict[str, Any]
    ) -> Domain:
        query = f"""
            UPDATE domains
            SET status = %s, external_refs = %s || external_refs
            WHERE id = %s
            RETURNING {_DOMAIN_COLUMNS}
        """
        return self._update(entity_id, query, (DomainStatus(status).value, Jsonb(merged_refs), entity_id))

    def reopen(self, entity_id: str, status: DomainStatus) -> Domain:
        query = f"""
            UPDATE domains
            SET status = %s, external_refs = external_refs - %s
            WHERE id = %s
            RETURNING {_DOMAIN_COLUMNS}
        """
        return self._update(entity_id, query, (DomainStatus(status).value, REF_ERROR, entity_id))

    def delete(self, entity_id: str) -> None:
        with translate_errors(f"Delete domain {entity_id}"):
            with self._pool.connection() as conn:
                conn.execute("DELETE FROM domains WHERE id = %s", (entity_id,))
                conn.commit()

    def _update(self, entity_id: str, query: str, params: tuple) -> Domain:
        with translate_errors(f"Update domain {entity_id}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                conn.commit()
        if row is None:
            raise NotFoundError(f"Domain {entity_id} not found")
        return _domain_from_row(row)


class PostgresMailboxRepository:
    """Implements MailboxRepository protocol via psycopg3."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

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
        query = f"""
            INSERT INTO mailboxes (
                organization_id, domain_id, full_email, first_name, last_name,
                status, source_provider, daily_limit, external_refs
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, '{{}}'::jsonb)
            RETURNING {_MAILBOX_COLUMNS}
        """
        params = (
            org_id,
            domain_id,
            full_email,
            first_name,
            last_name,
            MailboxStatus.PROVISIONING.value,
            source_provider,
            daily_limit,
        )
        with translate_errors(f"Create mailbox {full_email}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                conn.commit()
        return _mailbox_from_row(row)

    def get(self, entity_id: str) -> Mailbox | None:
        mailbox_id = as_uuid(entity_id)
        if mailbox_id is None:
            return None
        with translate_errors(f"Fetch mailbox {entity_id}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(f"SELECT {_MAILBOX_COLUMNS} FROM mailboxes WHERE id = %s", (mailbox_id,))
                row = cursor.fetchone()
        return _mailbox_from_row(row) if row else None

    def transition_status(
        self, entity_id: str, status: MailboxStatus, merged_refs: dict[str, Any]
    ) -> Mailbox:
        query = f"""
            UPDATE mailboxes
            SET status = %s, external_refs = %s || external_refs
            WHERE id = %s
            RETURNING {_MAILBOX_COLUMNS}
        """
        return self._update(entity_id, query, (MailboxStatus(status).value, Jsonb(merged_refs), entity_id))

    def reopen(self, entity_id: str, status: MailboxStatus) -> Mailbox:
        query = f"""
            UPDATE mailboxes
            SET status = %s, external_refs = external_refs - %s
            WHERE id = %s
            RETURNING {_MAILBOX_COLUMNS}
        """
        return self._update(entity_id, query, (MailboxStatus(status).value, REF_ERROR, entity_id))

    def delete(self, entity_id: str) -> None:
        with translate_errors(f"Delete mailbox {entity_id}"):
            with self._pool.connection() as conn:
                conn.execute("DELETE FROM mailboxes WHERE id = %s", (entity_id,))
                conn.commit()

    def _update(self, entity_id: str, query: str, params: tuple) -> Mailbox:
        with translate_errors(f"Update mailbox {entity_id}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                conn.commit()
        if row is None:
            raise NotFoundError(f"Mailbox {entity_id} not found")
        return _mailbox_from_row(row)


class PostgresRunLedger:
    """
    Implements RunLedger protocol via psycopg3 for one entity kind.

    Domain runs live in ``domain_runs``, mailbox runs in ``mailbox_runs``.
    """

    def __init__(self, pool: ConnectionPool, kind: EntityKind) -> None:
        self._pool = pool
        self._kind = EntityKind(kind)
        table, entity_column = _RUN_TABLES[self._kind]
        self._table = sql.Identifier(table)
        self._entity_column = sql.Identifier(entity_column)
        self._columns = sql.SQL(
            "id, organization_id, {entity} AS entity_id, initiated_by_user_id, status, error, "
            "created_at, started_at, finished_at"
        ).format(entity=self._entity_column)

    def create_run(self, entity_id: str, org_id: str, initiated_by: str | None) -> Run:
        query = sql.SQL(
            """
            INSERT INTO {table} (organization_id, {entity}, initiated_by_user_id, status)
            VALUES (%s, %s, %s, %s)
            RETURNING {columns}
            """
        ).format(table=self._table, entity=self._entity_column, columns=self._columns)
        try:
            with translate_errors(f"Create {self._kind.value} run"):
                row = self._fetch_one(query, (org_id, entity_id, initiated_by, RunStatus.QUEUED.value), commit=True)
        except ConflictError:
            raise ConflictError(
                f"A {self._kind.value} run is already queued or running for {entity_id}"
            ) from None
        return self._run_from_row(row)

    def get_run(self, run_id: str) -> Run | None:
        if as_uuid(run_id) is None:
            return None
        query = sql.SQL("SELECT {columns} FROM {table} WHERE id = %s").format(
            columns=self._columns, table=self._table
        )
        with translate_errors(f"Fetch run {run_id}"):
            row = self._fetch_one(query, (run_id,))
        return self._run_from_row(row) if row else None

    def list_runs(self, entity_id: str) -> list[Run]:
        if as_uuid(entity_id) is None:
            return []
        query = sql.SQL(
            "SELECT {columns} FROM {table} WHERE {entity} = %s ORDER BY created_at DESC"
        ).format(columns=self._columns, table=self._table, entity=self._entity_column)
        with translate_errors(f"List runs for {entity_id}"):
            with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
                cursor.execute(query, (entity_id,))
                rows = cursor.fetchall()
        return [self._run_from_row(row) for row in rows]

    def latest_run(self, entity_id: str) -> Run | None:
        runs = self.list_runs(entity_id)
        return runs[0] if runs else None

    def mark_running(self, run_id: str) -> Run:
        """
        QUEUED -> RUNNING.

        Terminal runs are returned unchanged. A run that is already
        RUNNING raises ConflictError so it is never executed twice.
        """
        query = sql.SQL(
            """
            UPDATE {table}
            SET status = %s, started_at = NOW()
            WHERE id = %s AND status = %s
            RETURNING {columns}
            """
        ).format(table=self._table, columns=self._columns)
        with translate_errors(f"Start run {run_id}"):
            row = self._fetch_one(
                query, (RunStatus.RUNNING.value, run_id, RunStatus.QUEUED.value), commit=True
            )
        if row is not None:
            return self._run_from_row(row)

        current = self._require(run_id)
        if current.status == RunStatus.RUNNING:
            raise ConflictError(f"Run {run_id} is already running")
        return current

    def mark_succeeded(self, run_id: str) -> Run:
        return self._finish(run_id, RunStatus.SUCCEEDED, None)

    def mark_failed(self, run_id: str, error: str) -> Run:
        return self._finish(run_id, RunStatus.FAILED, error)

    def mark_canceled(self, run_id: str) -> Run:
        return self._finish(run_id, RunStatus.CANCELED, None)

    def delete(self, run_id: str) -> None:
        query = sql.SQL("DELETE FROM {table} WHERE id = %s").format(table=self._table)
        with translate_errors(f"Delete run {run_id}"):
            with self._pool.connection() as conn:
                conn.execute(query, (run_id,))
                conn.commit()

    def _finish(self, run_id: str, status: RunStatus, error: str | None) -> Run:
        query = sql.SQL(
            """
            UPDATE {table}
            SET status = %s, error = %s, finished_at = NOW()
            WHERE id = %s AND status IN (%s, %s)
            RETURNING {columns}
            """
        ).format(table=self._table, columns=self._columns)
        params = (status.value, error, run_id, RunStatus.QUEUED.value, RunStatus.RUNNING.value)
        with translate_errors(f"Finish run {run_id}"):
            row = self._fetch_one(query, params, commit=True)
        if row is not None:
            return self._run_from_row(row)
        # Already terminal - duplicate completion signal
        return self._require(run_id)

    def _require(self, run_id: str) -> Run:
        run = self.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    def _fetch_one(self, query: sql.Composable, params: tuple, commit: bool = False) -> dict[str, Any] | None:
        with self._pool.connection() as conn, conn.cursor(row_factory=dict_row) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            if commit:
                conn.commit()
            return row

    def _run_from_row(self, row: dict[str, Any]) -> Run:
        initiated_by = row["initiated_by_user_id"]
        return Run(
            id=str(row["id"]),
            kind=self._kind,
            entity_id=str(row["entity_id"]),
            organization_id=str(row["organization_id"]),
            status=RunStatus(row["status"]),
            initiated_by=str(initiated_by) if initiated_by is not None else None,
            error=row["error"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: provisioner/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            with pool.connection() as conn:
                conn.execute(sql_file.read_text())
                conn.commit()

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
