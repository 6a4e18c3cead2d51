import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from database import get_db
from exceptions import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    NotesPipelineError,
    QueueFullError,
    SyncError,
    ValidationError,
)
from models import (
    ArtifactResponse,
    ConfirmDeduplicationRequest,
    GraphResponse,
    MergeProposalResponse,
    NoteCreateRequest,
    NoteCreateResponse,
    NoteResponse,
    NoteStatusResponse,
    SearchRequest,
    SearchResultResponse,
    SyncRetryResponse,
)
from notes.dependencies import NotesServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns/{campaign_uuid}", tags=["notes"])

_STATUS_CODES = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (QueueFullError, 503),
    (ExternalServiceError, 503),
    (SyncError, 503),
]


def _http_error(e: Exception) -> HTTPException:
    """Map pipeline errors onto HTTP status codes"""
    for error_type, status_code in _STATUS_CODES:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    if isinstance(e, NotesPipelineError):
        logger.error(f"❌ Pipeline error: {e}")
    else:
        logger.exception(f"❌ Unexpected error: {e}")
    return HTTPException(status_code=500, detail=f"Internal error: {e}")


@router.post("/notes", response_model=NoteCreateResponse, status_code=202)
async def create_note(
    campaign_uuid: str,
    request: NoteCreateRequest,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    """
    Store a note and queue it for extraction and deduplication.

    Returns immediately; poll GET /notes/{noteId}/status for the outcome.
    """
    try:
        return await services.notes.create_note(db, campaign_uuid, request)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/notes", response_model=List[NoteResponse])
async def list_notes(
    campaign_uuid: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.list_notes(db, campaign_uuid)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/notes/{note_id}", response_model=NoteResponse)
async def get_note(
    campaign_uuid: str,
    note_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.get_note(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/notes/{note_id}/status", response_model=NoteStatusResponse)
async def get_note_status(
    campaign_uuid: str,
    note_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    """Processing status plus per-store sync state"""
    try:
        return services.notes.status(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.post("/notes/{note_id}/retry", response_model=NoteStatusResponse, status_code=202)
async def retry_note_processing(
    campaign_uuid: str,
    note_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return await services.notes.retry_processing(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.post("/notes/{note_id}/sync/retry", response_model=SyncRetryResponse)
async def retry_note_sync(
    campaign_uuid: str,
    note_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    """Re-queue vector/graph syncs that ended in error"""
    try:
        return await services.notes.retry_sync(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.post("/notes/{note_id}/confirm-deduplication", response_model=NoteCreateResponse)
async def confirm_deduplication(
    campaign_uuid: str,
    note_id: str,
    request: ConfirmDeduplicationRequest,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    """
    Resolve pending merge proposals.

    Listed proposals are approved or rejected per their flag; pending
    proposals that are not listed are rejected.
    """
    decisions = {d.proposal_id: d.approved for d in request.approved_merge_proposals}
    try:
        return await services.notes.confirm_deduplication(db, campaign_uuid, note_id, decisions)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/notes/{note_id}/proposals", response_model=List[MergeProposalResponse])
async def list_pending_proposals(
    campaign_uuid: str,
    note_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.pending_proposals(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/graph", response_model=GraphResponse)
async def get_graph(
    campaign_uuid: str,
    note_id: Optional[str] = Query(None, alias="noteId"),
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return await services.notes.graph(db, campaign_uuid, note_id)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/artifacts", response_model=List[ArtifactResponse])
async def list_artifacts(
    campaign_uuid: str,
    artifact_type: Optional[str] = Query(None, alias="type"),
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.list_artifacts(db, campaign_uuid, artifact_type)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/artifacts/{artifact_id}", response_model=ArtifactResponse)
async def get_artifact(
    campaign_uuid: str,
    artifact_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.get_artifact(db, campaign_uuid, artifact_id)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/artifacts/{artifact_id}/notes", response_model=List[NoteResponse])
async def get_artifact_notes(
    campaign_uuid: str,
    artifact_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return services.notes.artifact_notes(db, campaign_uuid, artifact_id)
    except Exception as e:
        raise _http_error(e) from e


@router.get("/artifacts/{artifact_id}/neighbors", response_model=GraphResponse)
async def get_artifact_neighbors(
    campaign_uuid: str,
    artifact_id: str,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    try:
        return await services.notes.artifact_neighbors(db, campaign_uuid, artifact_id)
    except Exception as e:
        raise _http_error(e) from e


@router.post("/search", response_model=List[SearchResultResponse])
async def search_notes(
    campaign_uuid: str,
    request: SearchRequest,
    db: Session = Depends(get_db),
    services: NotesServices = Depends(get_services),
):
    """Semantic search over the campaign's notes"""
    try:
        return await services.notes.search(db, campaign_uuid, request)
    except Exception as e:
        raise _http_error(e) from e
