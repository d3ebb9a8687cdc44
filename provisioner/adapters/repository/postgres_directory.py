"""
PostgreSQL adapters for organization lookups and side-channel records.

Implements OrganizationDirectory, UsageEventSink and AuditLog. The tables
behind them are owned by collaborators (org management, billing); this
package only reads organizations and appends usage and audit rows.
"""

import logging
from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from provisioner.domain.models import SendingIntegration

from .postgres import as_uuid, translate_errors

logger = logging.getLogger(__name__)


class PostgresOrganizationDirectory:
    """Implements OrganizationDirectory protocol via psycopg3."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def is_member(self, org_id: str, user_id: str) -> bool:
        if as_uuid(org_id) is None or as_uuid(user_id) is None:
            return False
        with translate_errors(f"Membership check for org {org_id}"):
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(
                    "SELECT 1 FROM organization_members WHERE organization_id = %s AND user_id = %s",
                    (org_id, user_id),
                )
                return cursor.fetchone() is not None

    def get_billing_email(self, org_id: str) -> str | None:
        if as_uuid(org_id) is None:
            return None
        with translate_errors(f"Billing email lookup for org {org_id}"):
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute("SELECT billing_email FROM organizations WHERE id = %s", (org_id,))
                row = cursor.fetchone()
        return row[0] if row else None

    def get_sending_integration(self, org_id: str) -> SendingIntegration | None:
        """
        Most recent active sending-platform integration for the org.

        Credentials are returned as stored; decryption belongs to the
        credential store collaborator.
        """
        if as_uuid(org_id) is None:
            return None
        query = """
            SELECT provider, api_key, base_url
            FROM integrations
            WHERE organization_id = %s AND type = 'sending_platform' AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
        """
        with translate_errors(f"Integration lookup for org {org_id}"):
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(query, (org_id,))
                row = cursor.fetchone()
        if row is None:
            return None
        return SendingIntegration(platform=row[0], api_key=row[1], base_url=row[2])


class PostgresUsageEventSink:
    """Implements UsageEventSink protocol - appends to usage_events."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def emit(
        self,
        org_id: str,
        code: str,
        quantity: int,
        related_refs: dict[str, Any],
        effective_at: datetime,
    ) -> None:
        query = """
            INSERT INTO usage_events (organization_id, code, quantity, related_ids, effective_at)
            VALUES (%s, %s, %s, %s, %s)
        """
        with translate_errors(f"Create usage event {code}"):
            with self._pool.connection() as conn:
                conn.execute(query, (org_id, code, quantity, Jsonb(related_refs), effective_at))
                conn.commit()


class PostgresAuditLog:
    """Implements AuditLog protocol - appends to audit_log."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def record(
        self,
        org_id: str,
        actor_user_id: str | None,
        action: str,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any],
    ) -> None:
        query = """
            INSERT INTO audit_log (organization_id, actor_user_id, action, target_type, target_id, metadata)
            VALUES (%s, %s, %s, %s, %s, %s)
        """
        with translate_errors(f"Write audit log {action}"):
            with self._pool.connection() as conn:
                conn.execute(query, (org_id, actor_user_id, action, target_type, target_id, Jsonb(metadata)))
                conn.commit()
