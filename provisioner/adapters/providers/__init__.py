"""Provider adapters - Registrar, DNS, mailbox host and sending platforms."""

from .sandbox import (
    SENDING_PLATFORM_NAMES,
    SandboxDnsProvider,
    SandboxMailboxHost,
    SandboxRegistrar,
    SandboxSendingPlatform,
    build_sending_platforms,
)

__all__ = [
    "SENDING_PLATFORM_NAMES",
    "SandboxDnsProvider",
    "SandboxMailboxHost",
    "SandboxRegistrar",
    "SandboxSendingPlatform",
    "build_sending_platforms",
]
