"""
Console failure notifier adapter - Implements FailureNotifier protocol.

This module provides a console-based implementation of the domain's
failure notifier port, logging provisioning failures instead of sending
the transactional email.
"""

import logging

logger = logging.getLogger(__name__)


class ConsoleFailureNotifier:
    """
    Implements FailureNotifier protocol via console logging.

    Uses structural subtyping - no explicit inheritance from Protocol.
    Rendering and delivery of the real email belong to the transactional
    email collaborator.
    """

    def notify_provisioning_failed(self, billing_email: str, entity_key: str, reason: str) -> None:
        """
        Log the provisioning failure (simulates email delivery).

        Args:
            billing_email: Organization billing address
            entity_key: Domain name or mailbox address that failed
            reason: Human-readable failure message
        """
        logger.warning("[PROVISIONING FAILED] To: %s Entity: %s Reason: %s", billing_email, entity_key, reason)
