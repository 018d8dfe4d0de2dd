"""
Count session state machine.

    start()              complete()
    -------> in_progress -----------> completed
                  |
                  | cancel()
                  v
              cancelled

Both terminal states are final; a correction is a new session. Repeating
``complete``/``cancel`` on a session already in that state returns the
existing outcome so clients can retry after a timeout.
"""

import asyncio
import weakref
from typing import List, Optional
from uuid import UUID, uuid4

from core.logging_config import get_logger

from .errors import SessionConflict, SessionNotActive, SessionNotFound, ZoneNotFound
from .interfaces import SessionRepository
from .models import CompletionResult, CountSession, ModeTag, SessionStatus, VarianceItem, utcnow
from .reconciliation import ReconciliationEngine
from .variance import VarianceReporter

logger = get_logger(__name__)


class SessionLifecycleManager:
    def __init__(
        self,
        repo: SessionRepository,
        reconciler: ReconciliationEngine,
        reporter: VarianceReporter,
        clock=utcnow,
    ):
        self.repo = repo
        self.reconciler = reconciler
        self.reporter = reporter
        self.clock = clock
        # entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    def guard(self, session_id: UUID) -> asyncio.Lock:
        """Per-session lock shared by complete, cancel and count writes."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def get(self, session_id: UUID) -> CountSession:
        session = await self.repo.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def get_active(self, actor_id: UUID, mode_tag: ModeTag) -> Optional[CountSession]:
        return await self.repo.get_active_session(actor_id, mode_tag)

    async def list_sessions(self, mode_tag: ModeTag) -> List[CountSession]:
        return await self.repo.list_sessions(mode_tag)

    async def start(self, actor_id: UUID, zone_id: UUID, mode_tag: ModeTag) -> CountSession:
        if await self.repo.get_zone(zone_id) is None:
            raise ZoneNotFound(zone_id)

        existing = await self.repo.get_active_session(actor_id, mode_tag)
        if existing is not None:
            raise SessionConflict(existing)

        session = await self.repo.create_session(
            CountSession(
                id=uuid4(),
                actor_id=actor_id,
                zone_id=zone_id,
                mode_tag=mode_tag,
                status=SessionStatus.IN_PROGRESS,
                started_at=self.clock(),
            )
        )
        logger.info(
            "session started",
            extra={"session_id": session.id, "actor_id": actor_id, "zone_id": zone_id, "mode_tag": mode_tag.value},
        )
        return session

    async def review(self, session_id: UUID) -> List[VarianceItem]:
        return await self.reporter.review(await self.get(session_id))

    async def complete(self, session_id: UUID) -> CompletionResult:
        async with self.guard(session_id):
            session = await self.get(session_id)
            if session.status == SessionStatus.COMPLETED:
                stored = await self.repo.get_completion(session_id)
                if stored is not None:
                    logger.info("session already completed", extra={"session_id": session_id})
                    return stored
            if not session.is_active:
                raise SessionNotActive(session_id, session.status)

            variance = await self.reporter.review(session)
            # StoreUnavailable propagates from here with the session still in progress
            outcome = await self.reconciler.reconcile(session)

            result = CompletionResult(
                session_id=session_id,
                completed_at=self.clock(),
                variance=variance,
                products=outcome.products,
                keg_checks=outcome.keg_checks,
                attempts=outcome.attempts,
            )
            updated = await self.repo.transition(session_id, SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, result)
            if updated is None:
                current = await self.get(session_id)
                logger.error(
                    "session changed status during reconciliation",
                    extra={"session_id": session_id, "status": current.status.value},
                )
                raise SessionNotActive(session_id, current.status)

            logger.info(
                "session completed",
                extra={
                    "session_id": session_id,
                    "products": len(result.products),
                    "reconciled_with_conflict": result.reconciled_with_conflict,
                    "keg_mismatches": len(result.keg_mismatches),
                },
            )
            return result

    async def cancel(self, session_id: UUID) -> CountSession:
        # waits for a running completion; the stock batch is never interrupted
        async with self.guard(session_id):
            session = await self.get(session_id)
            if session.status == SessionStatus.CANCELLED:
                return session
            if not session.is_active:
                raise SessionNotActive(session_id, session.status)

            updated = await self.repo.transition(session_id, SessionStatus.IN_PROGRESS, SessionStatus.CANCELLED)
            if updated is None:
                current = await self.get(session_id)
                if current.status == SessionStatus.CANCELLED:
                    return current
                raise SessionNotActive(session_id, current.status)

            logger.info("session cancelled", extra={"session_id": session_id})
            return updated
