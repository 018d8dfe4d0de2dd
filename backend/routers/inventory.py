from functools import lru_cache
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder

from core.converters import count_to_schema, keg_summary_to_schema, session_to_schema
from core.logging_config import get_logger
from counting import (
    CountingError,
    InventoryCountEngine,
    InvalidObservation,
    ModeTag,
    SessionConflict,
    SessionNotActive,
    SessionNotFound,
    StoreUnavailable,
    UnknownProduct,
    ZoneNotFound,
    mode_tag_for,
)
from counting.models import CompletionResult
from counting.variance import summarize
from db.database import async_session_maker
from db.repositories import RecordedFillObserver, SqlProductResolver, SqlSessionRepository, SqlStockStore
from schemas.inventory import (
    CountCreate,
    CountRead,
    KegSummaryRead,
    SessionDetail,
    SessionRead,
    SessionStartRequest,
    VarianceReport,
)

router = APIRouter()
logger = get_logger(__name__)


@lru_cache
def get_engine() -> InventoryCountEngine:
    return InventoryCountEngine(
        repo=SqlSessionRepository(async_session_maker),
        store=SqlStockStore(async_session_maker),
        products=SqlProductResolver(async_session_maker),
        observer=RecordedFillObserver(async_session_maker),
    )


def get_actor_id(x_actor_id: UUID = Header(...)) -> UUID:
    # authentication lives in front of this router; it forwards the staff member's id
    return x_actor_id


def get_mode_tag(mode: Optional[str] = Query(None)) -> ModeTag:
    try:
        return mode_tag_for(mode)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown mode: {mode}")


def _http_error(e: CountingError) -> HTTPException:
    if isinstance(e, SessionConflict):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "You already have an active session", "session": jsonable_encoder(session_to_schema(e.existing))},
        )
    if isinstance(e, (SessionNotFound, ZoneNotFound, UnknownProduct)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, SessionNotActive):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InvalidObservation):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, StoreUnavailable):
        logger.warning("store unavailable", extra={"error": str(e)})
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/sessions", response_model=SessionRead, status_code=status.HTTP_201_CREATED)
async def start_session(
    data: SessionStartRequest,
    actor_id: UUID = Depends(get_actor_id),
    mode_tag: ModeTag = Depends(get_mode_tag),
    engine: InventoryCountEngine = Depends(get_engine),
):
    if data.mode_tag is not None:
        mode_tag = ModeTag(data.mode_tag)
    try:
        session = await engine.start_session(actor_id, data.zone_id, mode_tag)
    except CountingError as e:
        raise _http_error(e)
    return session_to_schema(session)


@router.get("/sessions/active", response_model=Optional[SessionRead])
async def get_active_session(
    actor_id: UUID = Depends(get_actor_id),
    mode_tag: ModeTag = Depends(get_mode_tag),
    engine: InventoryCountEngine = Depends(get_engine),
):
    session = await engine.get_active_session(actor_id, mode_tag)
    return session_to_schema(session) if session else None


@router.get("/sessions", response_model=List[SessionRead])
async def list_sessions(
    mode_tag: ModeTag = Depends(get_mode_tag),
    engine: InventoryCountEngine = Depends(get_engine),
):
    return [session_to_schema(s) for s in await engine.list_sessions(mode_tag)]


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(session_id: UUID, engine: InventoryCountEngine = Depends(get_engine)):
    try:
        session = await engine.get_session(session_id)
        counts = await engine.list_counts(session_id)
    except CountingError as e:
        raise _http_error(e)
    return {"session": session_to_schema(session), "counts": [count_to_schema(c) for c in counts]}


@router.post("/sessions/{session_id}/counts", response_model=CountRead)
async def record_count(
    session_id: UUID,
    data: CountCreate,
    engine: InventoryCountEngine = Depends(get_engine),
):
    try:
        count = await engine.record_count(session_id, data.product_id, data.observation(), data.idempotency_key)
    except CountingError as e:
        raise _http_error(e)
    return count_to_schema(count)


@router.get("/sessions/{session_id}/variance", response_model=VarianceReport)
async def preview_variance(session_id: UUID, engine: InventoryCountEngine = Depends(get_engine)):
    try:
        items = await engine.preview_variance(session_id)
    except CountingError as e:
        raise _http_error(e)
    return {"session_id": session_id, "items": items, "summary": summarize(items)}


@router.post("/sessions/{session_id}/complete", response_model=CompletionResult)
async def complete_session(session_id: UUID, engine: InventoryCountEngine = Depends(get_engine)):
    try:
        return await engine.complete_session(session_id)
    except CountingError as e:
        raise _http_error(e)


@router.post("/sessions/{session_id}/cancel", response_model=SessionRead)
async def cancel_session(session_id: UUID, engine: InventoryCountEngine = Depends(get_engine)):
    try:
        session = await engine.cancel_session(session_id)
    except CountingError as e:
        raise _http_error(e)
    return session_to_schema(session)


@router.get("/kegs/product/{product_id}/summary", response_model=KegSummaryRead)
async def keg_summary(
    product_id: UUID,
    mode_tag: ModeTag = Depends(get_mode_tag),
    engine: InventoryCountEngine = Depends(get_engine),
):
    try:
        acct = await engine.keg_summary(product_id, mode_tag)
    except CountingError as e:
        raise _http_error(e)
    return keg_summary_to_schema(acct)
