"""
API v1 routes.

Defines REST endpoints for domain and mailbox provisioning. Handlers are
plain ``def`` so FastAPI runs the blocking provider calls in its
threadpool.
"""

from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from provisioner.api.dependencies import get_actor_id, get_provisioning_service
from provisioner.api.models import (
    CreateDomainRequest,
    CreateDomainResponse,
    CreateMailboxesRequest,
    CreateMailboxesResponse,
    DomainDetailResponse,
    DomainModel,
    ErrorResponse,
    MailboxDetailResponse,
    MailboxModel,
    ProvisioningFailureResponse,
    RetryResponse,
    RunListResponse,
    RunModel,
)
from provisioner.domain.exceptions import (
    ConflictError,
    NotAMemberError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ProvisioningError,
    ValidationError,
)
from provisioner.domain.models import Domain, EntityKind
from provisioner.domain.provisioning import ProvisioningService

router = APIRouter(tags=["v1"])

_READ_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Not a member of the organization"},
    404: {"model": ErrorResponse, "description": "Entity not found"},
}

_ERROR_RESPONSES = {
    **_READ_RESPONSES,
    409: {"model": ErrorResponse, "description": "Duplicate entity or run already in flight"},
    422: {"model": ErrorResponse, "description": "Validation error"},
    502: {
        "model": ProvisioningFailureResponse,
        "description": "Provider failure. The entity and run are recorded and can be retried",
    },
}


def raise_http_error(exc: ProvisioningError) -> NoReturn:
    """Map the domain error taxonomy onto HTTP status codes."""
    if isinstance(exc, NotAMemberError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, PersistenceError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Storage failure",
        ) from None
    else:
        code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=str(exc)) from None


def provider_failure_response(exc: ProviderError) -> JSONResponse:
    """
    502 response carrying the entity and run as recorded by the executor.

    Falls back to a bare ``detail`` when the error never reached a run.
    """
    content: dict[str, Any] = {"detail": str(exc)}
    if exc.outcome is not None:
        entity = exc.outcome.entity
        if isinstance(entity, Domain):
            content["domain"] = DomainModel.model_validate(entity).model_dump(mode="json")
        else:
            content["mailbox"] = MailboxModel.model_validate(entity).model_dump(mode="json")
        content["run"] = RunModel.model_validate(exc.outcome.run).model_dump(mode="json")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)


@router.post(
    "/orgs/{org_id}/domains",
    response_model=CreateDomainResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Create and provision a domain",
    description="Records the domain, queues a run and provisions it synchronously "
    "(registration when applicable, DNS zone, baseline SPF/DMARC records).",
)
def create_domain(
    org_id: str,
    request_data: CreateDomainRequest,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> CreateDomainResponse | JSONResponse:
    try:
        outcome = service.create_domain(
            org_id,
            user_id,
            request_data.domain,
            request_data.source_provider.value,
            request_data.tags,
            request_data.auto_renew,
        )
    except ProviderError as exc:
        return provider_failure_response(exc)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return CreateDomainResponse(
        domain=DomainModel.model_validate(outcome.entity),
        run=RunModel.model_validate(outcome.run),
    )


@router.get(
    "/orgs/{org_id}/domains/{domain_id}",
    response_model=DomainDetailResponse,
    responses=_READ_RESPONSES,
    summary="Get a domain and its latest run",
)
def get_domain(
    org_id: str,
    domain_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> DomainDetailResponse:
    try:
        domain = service.get_domain(domain_id, org_id, user_id)
        latest = service.latest_run(domain.id, EntityKind.DOMAIN)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return DomainDetailResponse(
        domain=DomainModel.model_validate(domain),
        latest_run=RunModel.model_validate(latest) if latest else None,
    )


@router.get(
    "/orgs/{org_id}/domains/{domain_id}/runs",
    response_model=RunListResponse,
    responses=_READ_RESPONSES,
    summary="List a domain's runs, newest first",
)
def list_domain_runs(
    org_id: str,
    domain_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> RunListResponse:
    try:
        domain = service.get_domain(domain_id, org_id, user_id)
        runs = service.list_runs(domain.id, EntityKind.DOMAIN)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return RunListResponse(runs=[RunModel.model_validate(r) for r in runs])


@router.post(
    "/orgs/{org_id}/domains/{domain_id}/mailboxes",
    response_model=CreateMailboxesResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERROR_RESPONSES,
    summary="Create mailboxes on a ready domain",
    description="Creates one mailbox and one run per requested mailbox. "
    "The batch is not atomic: inspect each run's status.",
)
def create_mailboxes(
    org_id: str,
    domain_id: str,
    request_data: CreateMailboxesRequest,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> CreateMailboxesResponse:
    try:
        outcome = service.create_mailboxes(
            org_id,
            user_id,
            domain_id,
            request_data.count,
            request_data.first_name_pattern,
            request_data.last_name_pattern,
        )
    except ProvisioningError as exc:
        raise_http_error(exc)
    return CreateMailboxesResponse(
        mailboxes=[MailboxModel.model_validate(m) for m in outcome.mailboxes],
        runs=[RunModel.model_validate(r) for r in outcome.runs],
    )


@router.get(
    "/orgs/{org_id}/mailboxes/{mailbox_id}",
    response_model=MailboxDetailResponse,
    responses=_READ_RESPONSES,
    summary="Get a mailbox and its latest run",
)
def get_mailbox(
    org_id: str,
    mailbox_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> MailboxDetailResponse:
    try:
        mailbox = service.get_mailbox(mailbox_id, org_id, user_id)
        latest = service.latest_run(mailbox.id, EntityKind.MAILBOX)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return MailboxDetailResponse(
        mailbox=MailboxModel.model_validate(mailbox),
        latest_run=RunModel.model_validate(latest) if latest else None,
    )


@router.get(
    "/orgs/{org_id}/mailboxes/{mailbox_id}/runs",
    response_model=RunListResponse,
    responses=_READ_RESPONSES,
    summary="List a mailbox's runs, newest first",
)
def list_mailbox_runs(
    org_id: str,
    mailbox_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> RunListResponse:
    try:
        mailbox = service.get_mailbox(mailbox_id, org_id, user_id)
        runs = service.list_runs(mailbox.id, EntityKind.MAILBOX)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return RunListResponse(runs=[RunModel.model_validate(r) for r in runs])


@router.post(
    "/orgs/{org_id}/domains/{domain_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Retry domain provisioning",
)
def retry_domain(
    org_id: str,
    domain_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> RetryResponse | JSONResponse:
    return _retry(service, domain_id, EntityKind.DOMAIN, user_id, org_id)


@router.post(
    "/orgs/{org_id}/mailboxes/{mailbox_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERROR_RESPONSES,
    summary="Retry mailbox provisioning",
)
def retry_mailbox(
    org_id: str,
    mailbox_id: str,
    user_id: str = Depends(get_actor_id),
    service: ProvisioningService = Depends(get_provisioning_service),
) -> RetryResponse | JSONResponse:
    return _retry(service, mailbox_id, EntityKind.MAILBOX, user_id, org_id)


def _retry(
    service: ProvisioningService, entity_id: str, kind: EntityKind, user_id: str, org_id: str
) -> RetryResponse | JSONResponse:
    try:
        outcome = service.retry_provisioning(entity_id, kind, initiated_by=user_id, org_id=org_id)
    except ProviderError as exc:
        return provider_failure_response(exc)
    except ProvisioningError as exc:
        raise_http_error(exc)
    return RetryResponse(run=RunModel.model_validate(outcome.run))
