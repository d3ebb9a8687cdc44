"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from provisioner.domain.models import DomainStatus, EntityKind, MailboxStatus, RunStatus, SourceProvider


class CreateDomainRequest(BaseModel):
    """Request model for domain creation."""

    domain: str = Field(..., min_length=3, max_length=253, description="Domain name to provision")
    source_provider: SourceProvider
    tags: list[str] = Field(default_factory=list)
    auto_renew: bool = True


class CreateMailboxesRequest(BaseModel):
    """Request model for mailbox batch creation."""

    count: int = Field(..., ge=1, description="Number of mailboxes to create")
    first_name_pattern: str | None = Field(None, max_length=64, pattern=r"^[A-Za-z0-9._-]+$")
    last_name_pattern: str | None = Field(None, max_length=64)


class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    domain: str
    status: DomainStatus
    source_provider: SourceProvider
    tags: list[str]
    auto_renew: bool
    external_refs: dict[str, Any]
    created_at: datetime | None = None


class MailboxModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    domain_id: str
    full_email: str
    first_name: str | None = None
    last_name: str | None = None
    status: MailboxStatus
    source_provider: str
    daily_limit: int
    external_refs: dict[str, Any]
    created_at: datetime | None = None


class RunModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: EntityKind
    entity_id: str
    organization_id: str
    status: RunStatus
    initiated_by: str | None = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class CreateDomainResponse(BaseModel):
    """Response model for domain creation."""

    domain: DomainModel
    run: RunModel


class CreateMailboxesResponse(BaseModel):
    """Response model for mailbox creation. Each run must be inspected individually."""

    mailboxes: list[MailboxModel]
    runs: list[RunModel]


class RetryResponse(BaseModel):
    """Response model for a retry."""

    run: RunModel


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str


class ProvisioningFailureResponse(BaseModel):
    """
    Provider failure response.

    The entity and its run are recorded before the error is returned, so
    the caller can retry using the ids in this body. Exactly one of domain
    or mailbox is present.
    """

    detail: str
    domain: DomainModel | None = None
    mailbox: MailboxModel | None = None
    run: RunModel | None = None


class DomainDetailResponse(BaseModel):
    """A domain with its most recent run."""

    domain: DomainModel
    latest_run: RunModel | None = None


class MailboxDetailResponse(BaseModel):
    """A mailbox with its most recent run."""

    mailbox: MailboxModel
    latest_run: RunModel | None = None


class RunListResponse(BaseModel):
    """Runs for one entity, newest first."""

    runs: list[RunModel]
