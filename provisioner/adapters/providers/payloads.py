"""
Provider payload models - Validation at the adapter boundary.

Vendor APIs answer with loosely-typed JSON. Each payload is validated
here with a pydantic model and converted into the frozen result type the
domain expects, so the orchestrator only ever sees the narrow contract
of the ports. A payload that does not validate becomes the provider
category's error.
"""

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadValidationError

from provisioner.domain.exceptions import ProviderError
from provisioner.domain.models import (
    ApiKeyValidation,
    DnsZone,
    MailboxAccount,
    RegistrationResult,
    SendingPlatformAccount,
)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True, frozen=True)


class RegistrarOrderPayload(_Payload):
    """Namecheap answers ``orderId``, ResellerClub answers ``entityid``."""

    order_id: str = Field(min_length=1, validation_alias=AliasChoices("orderId", "entityid", "order_id"))

    def to_result(self) -> RegistrationResult:
        return RegistrationResult(order_id=self.order_id)


class ZonePayload(_Payload):
    """Cloudflare zone object."""

    id: str = Field(min_length=1)
    name_servers: list[str] = Field(min_length=1)

    def to_result(self) -> DnsZone:
        return DnsZone(zone_id=self.id, nameservers=tuple(self.name_servers))


class MailboxAccountPayload(_Payload):
    account_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "id", "account_id"))

    def to_result(self) -> MailboxAccount:
        return MailboxAccount(account_id=self.account_id)


class SendingAccountPayload(_Payload):
    external_id: str = Field(min_length=1, validation_alias=AliasChoices("id", "externalId", "external_id"))

    def to_result(self) -> SendingPlatformAccount:
        return SendingPlatformAccount(external_id=self.external_id)


class ApiKeyCheckPayload(_Payload):
    valid: bool
    error: str | None = None

    def to_result(self) -> ApiKeyValidation:
        return ApiKeyValidation(valid=self.valid, error=self.error)


def validate_payload(
    model: type[PayloadT],
    payload: Mapping[str, Any],
    error: type[ProviderError],
    provider: str,
) -> PayloadT:
    """
    Validate a vendor payload.

    Raises:
        error: The provider category's error when the payload is malformed
    """
    try:
        return model.model_validate(payload)
    except PayloadValidationError as e:
        raise error(f"{provider} returned an unexpected response ({e.error_count()} invalid field(s))") from e
