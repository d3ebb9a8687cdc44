"""
Run executor - Saga state machine for one provisioning run.

Run State Machine (Forward-Only Transitions)
============================================

    QUEUED --(start)--> RUNNING --(all steps ok)--> SUCCEEDED
                           |
                           +--(any step raises)--> FAILED
                           |
                           +--(cancel observed between steps)--> CANCELED

The entity moves in lockstep:

    pending/provisioning --> provisioning --> ready/active   (run SUCCEEDED)
                                          --> error          (run FAILED/CANCELED)

Every step's refs are merged into the entity's external_refs before the
next step starts, so a later failure never erases earlier progress.
Provider side effects are never undone.
"""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .exceptions import ProviderError
from .models import REF_ERROR, Domain, DomainStatus, Mailbox, MailboxStatus, ProvisioningOutcome, Run
from .ports import DomainRepository, FailureNotifier, MailboxRepository, OrganizationDirectory, RunLedger
from .steps import Step

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = "provisioning canceled"


@dataclass(frozen=True)
class Lifecycle:
    """Entity statuses the executor moves through for one entity kind."""

    in_progress: Enum
    ready: Enum
    error: Enum


DOMAIN_LIFECYCLE = Lifecycle(DomainStatus.PROVISIONING, DomainStatus.READY, DomainStatus.ERROR)
MAILBOX_LIFECYCLE = Lifecycle(MailboxStatus.PROVISIONING, MailboxStatus.ACTIVE, MailboxStatus.ERROR)


@dataclass
class RunExecutor:
    """
    Executes runs for one entity kind against an ordered step list.

    The executor performs no retries. A failed entity is re-provisioned
    by creating a new run and executing it again.
    """

    entities: DomainRepository | MailboxRepository
    runs: RunLedger
    lifecycle: Lifecycle
    organizations: OrganizationDirectory
    notifier: FailureNotifier

    def execute(
        self,
        run: Run,
        entity: Domain | Mailbox,
        steps: Sequence[Step],
        cancel: threading.Event | None = None,
    ) -> ProvisioningOutcome:
        """
        Drive a queued run to a terminal state.

        Args:
            run: Run in QUEUED status
            entity: Entity the run targets
            steps: Ordered step plan for the entity
            cancel: Optional signal checked between steps

        Returns:
            Terminal entity snapshot and run

        Raises:
            ProviderError: Re-raised after the failure has been recorded, with
                the recorded snapshots attached as ``outcome``
            PersistenceError: If a store write fails
        """
        started = self.runs.mark_running(run.id)
        if started.status.is_terminal:
            # Duplicate start signal for a run that already finished
            logger.info("Run %s is %s, skipping execution", run.id, started.status.value)
            current = self.entities.get(entity.id) or entity
            return ProvisioningOutcome(entity=current, run=started)

        logger.info("Run %s started for %s (%d steps)", run.id, entity.key, len(steps))

        try:
            current = self.entities.reopen(entity.id, self.lifecycle.in_progress)

            for step in steps:
                if cancel is not None and cancel.is_set():
                    return self._cancel(started, current)

                if step.already_done(current.external_refs):
                    logger.info("Run %s: step %s already recorded, skipping", run.id, step.name)
                    continue

                produced = step.action(dict(current.external_refs))
                logger.info("Run %s: step %s completed", run.id, step.name)
                if produced:
                    current = self.entities.transition_status(
                        entity.id, self.lifecycle.in_progress, produced
                    )

            current = self.entities.transition_status(entity.id, self.lifecycle.ready, {})
            finished = self.runs.mark_succeeded(run.id)
        except Exception as exc:
            recorded = self._fail(started, entity, exc)
            if isinstance(exc, ProviderError):
                exc.outcome = recorded
            raise

        logger.info("Run %s succeeded for %s", run.id, entity.key)
        return ProvisioningOutcome(entity=current, run=finished)

    def _fail(self, run: Run, entity: Domain | Mailbox, exc: Exception) -> ProvisioningOutcome:
        """
        Record the failure on entity and run, then notify the org.

        Each write is attempted independently; the run is marked FAILED
        even when the entity write raises.
        """
        message = str(exc) or exc.__class__.__name__
        logger.error("Run %s failed for %s: %s", run.id, entity.key, message)

        current: Domain | Mailbox = entity
        failed = run
        try:
            current = self.entities.transition_status(entity.id, self.lifecycle.error, {REF_ERROR: message})
        except Exception:
            logger.exception("Run %s: could not record error on %s", run.id, entity.key)
        try:
            failed = self.runs.mark_failed(run.id, message)
        except Exception:
            logger.exception("Run %s: could not mark run failed", run.id)

        self._notify(run.organization_id, entity.key, message)
        return ProvisioningOutcome(entity=current, run=failed)

    def _cancel(self, run: Run, entity: Domain | Mailbox) -> ProvisioningOutcome:
        logger.warning("Run %s canceled for %s", run.id, entity.key)
        current = self.entities.transition_status(
            entity.id, self.lifecycle.error, {REF_ERROR: CANCELED_MESSAGE}
        )
        canceled = self.runs.mark_canceled(run.id)
        return ProvisioningOutcome(entity=current, run=canceled)

    def _notify(self, org_id: str, entity_key: str, reason: str) -> None:
        """Best-effort failure notification. Never raises."""
        try:
            billing_email = self.organizations.get_billing_email(org_id)
            if not billing_email:
                logger.warning("No billing email for org %s, skipping failure notification", org_id)
                return
            self.notifier.notify_provisioning_failed(billing_email, entity_key, reason)
        except Exception:
            logger.exception("Failed to send provisioning failure notification for %s", entity_key)
