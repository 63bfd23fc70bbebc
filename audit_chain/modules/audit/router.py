"""Audit chain endpoints for appending, verifying and exporting events."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse

from audit_chain.core.config import get_settings
from audit_chain.core.crypto.canonicalization import SerializationError
from audit_chain.core.crypto.hash_chain import is_hex_digest
from audit_chain.core.logging import get_logger
from audit_chain.modules.audit.schemas import (
    AuditAppendRequest,
    AuditEventResponse,
    ChainVerificationResponse,
)
from audit_chain.modules.audit.service import AuditChainService, AuditWriteFailed
from audit_chain.modules.export.schemas import AUDIT_LOG_FILENAME
from audit_chain.modules.export.service import write_audit_log

logger = get_logger(__name__)
router = APIRouter()


def get_audit_service(request: Request) -> AuditChainService:
    """Return the service created during application startup."""
    service: AuditChainService | None = getattr(request.app.state, "audit_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit log unavailable",
        )
    return service


AuditService = Annotated[AuditChainService, Depends(get_audit_service)]


@router.post(
    "/events",
    response_model=AuditEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_audit_event(
    body: AuditAppendRequest,
    service: AuditService,
) -> AuditEventResponse:
    """Append one event to the audit chain."""
    try:
        audit_event = await service.append_event(
            actor_principal_id=body.actor_principal_id,
            action=body.action,
            tier=body.tier,
            payload=body.payload,
            case_id=body.case_id,
        )
    except SerializationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except AuditWriteFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit event could not be recorded",
        ) from exc
    return AuditEventResponse.from_event(audit_event)


@router.get("/verify/chain", response_model=ChainVerificationResponse)
async def verify_chain(
    service: AuditService,
    expected_head_hash: str | None = Query(
        None, description="Head hash obtained out of band; the chain must end there"
    ),
) -> ChainVerificationResponse:
    """Verify the integrity of the whole audit chain."""
    if expected_head_hash is not None and not is_hex_digest(expected_head_hash):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="expected_head_hash must be 64 lowercase hex characters",
        )
    result = await service.verify(expected_head_hash)
    return ChainVerificationResponse.from_result(result)


@router.get("/export", response_class=FileResponse)
async def export_audit_log(service: AuditService) -> FileResponse:
    """
    Export the audit chain as JSONL.

    The file is also kept under the export directory. Its head hash and
    SHA-256 are returned in ``X-Audit-Head-Hash`` and
    ``X-Audit-Events-Sha256``.
    """
    settings = get_settings()
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    path = settings.export_dir / "audit" / stamp / AUDIT_LOG_FILENAME
    digest = await write_audit_log(service.log, path)
    logger.info(
        "audit_log_exported",
        path=str(path),
        event_count=digest.event_count,
        head_hash=digest.head_hash,
    )
    return FileResponse(
        path,
        media_type="application/x-ndjson",
        filename=AUDIT_LOG_FILENAME,
        headers={
            "X-Audit-Head-Hash": digest.head_hash,
            "X-Audit-Events-Sha256": digest.sha256,
            "X-Audit-Event-Count": str(digest.event_count),
        },
    )
