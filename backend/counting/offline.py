"""
Client-side offline queue for counts.

While disconnected, counts are appended to a durable log (one JSON line per
entry) with a monotonic sequence number and an idempotency key. When the
connection comes back the log is replayed in order through the same
``record_count`` path used online. An entry leaves the log only after the
server accepted it, so a crash mid-flush replays it again and the
idempotency key turns that replay into a no-op.

Entries the server can never accept (session closed, invalid observation)
are moved to a dead-letter log for the operator instead of being retried.
A store outage stops the flush like a dropped connection: the client goes
offline and the remaining entries wait, in order, for the next reconnect.
"""

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ValidationError

from core.config import settings
from core.logging_config import get_logger

from .errors import InvalidObservation, SessionNotActive, SessionNotFound, StaleSession, StoreUnavailable
from .models import Count, CountObservation, utcnow
from .recorder import parse_observation

logger = get_logger(__name__)

Submitter = Callable[[UUID, UUID, CountObservation, str], Awaitable[Count]]


class OfflineEntry(BaseModel):
    seq: int
    idempotency_key: str
    session_id: UUID
    product_id: UUID
    observation: CountObservation
    queued_at: datetime


class DeadLetter(BaseModel):
    entry: OfflineEntry
    error_type: str
    error: str
    failed_at: datetime


def _read_jsonl(path: Path, model):
    if not path.exists():
        return []
    out = []
    with path.open("r", encoding="utf-8") as f:
        lines = f.read().splitlines()
    for i, line in enumerate(lines):
        if not line.strip():
            continue
        try:
            out.append(model.model_validate_json(line))
        except ValidationError:
            if i == len(lines) - 1:
                # torn write from a crash during append; the entry was never acknowledged
                logger.warning("dropping partial trailing line", extra={"path": str(path)})
                continue
            raise
    return out


def _write_jsonl_atomic(path: Path, items) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        for item in items:
            f.write(item.model_dump_json() + "\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def _append_jsonl(path: Path, item) -> None:
    with path.open("a", encoding="utf-8") as f:
        f.write(item.model_dump_json() + "\n")
        f.flush()
        os.fsync(f.fileno())


class OfflineLog:
    """Durable, strictly ordered append log of counts made while offline."""

    def __init__(self, directory: Union[str, Path, None] = None, name: str = "counts"):
        self.directory = Path(directory or settings.offline_log_dir)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"{name}.jsonl"
        self.dead_path = self.directory / f"{name}.dead.jsonl"
        self.seq_path = self.directory / f"{name}.seq"

    def _next_seq(self) -> int:
        last = 0
        if self.seq_path.exists():
            last = int(self.seq_path.read_text().strip() or 0)
        # the log itself wins if the counter file lags behind it
        for entry in self.entries():
            last = max(last, entry.seq)
        seq = last + 1
        tmp = self.seq_path.with_suffix(".tmp")
        tmp.write_text(str(seq))
        os.replace(tmp, self.seq_path)
        return seq

    def append(
        self,
        session_id: UUID,
        product_id: UUID,
        observation: CountObservation,
        idempotency_key: Optional[str] = None,
    ) -> OfflineEntry:
        entry = OfflineEntry(
            seq=self._next_seq(),
            idempotency_key=idempotency_key or str(uuid4()),
            session_id=session_id,
            product_id=product_id,
            observation=observation,
            queued_at=utcnow(),
        )
        _append_jsonl(self.path, entry)
        logger.info(
            "count queued offline",
            extra={"seq": entry.seq, "session_id": session_id, "product_id": product_id},
        )
        return entry

    def entries(self) -> List[OfflineEntry]:
        return sorted(_read_jsonl(self.path, OfflineEntry), key=lambda e: e.seq)

    def __len__(self) -> int:
        return len(self.entries())

    def remove(self, seq: int) -> None:
        _write_jsonl_atomic(self.path, [e for e in self.entries() if e.seq != seq])

    def dead_letter(self, entry: OfflineEntry, error: Exception) -> DeadLetter:
        letter = DeadLetter(entry=entry, error_type=type(error).__name__, error=str(error), failed_at=utcnow())
        if not any(d.entry.idempotency_key == entry.idempotency_key for d in self.dead_letters()):
            _append_jsonl(self.dead_path, letter)
        self.remove(entry.seq)
        logger.warning(
            "offline count dead-lettered",
            extra={"seq": entry.seq, "session_id": entry.session_id, "error_type": letter.error_type},
        )
        return letter

    def dead_letters(self) -> List[DeadLetter]:
        return _read_jsonl(self.dead_path, DeadLetter)

    def discard_dead_letter(self, idempotency_key: str) -> bool:
        """Operator resolved a dead letter by hand."""
        letters = self.dead_letters()
        kept = [d for d in letters if d.entry.idempotency_key != idempotency_key]
        if len(kept) == len(letters):
            return False
        _write_jsonl_atomic(self.dead_path, kept)
        return True


@dataclass
class SyncReport:
    synced: List[OfflineEntry] = field(default_factory=list)
    dead_lettered: List[DeadLetter] = field(default_factory=list)
    pending: int = 0

    @property
    def has_problems(self) -> bool:
        return bool(self.dead_lettered) or self.pending > 0


class OfflineSync:
    """Routes counts online or into the offline log, driven by connectivity events."""

    def __init__(self, submit: Submitter, log: OfflineLog, online: bool = True):
        self.submit = submit
        self.log = log
        self._online = online
        self._flush_lock = asyncio.Lock()

    @property
    def is_online(self) -> bool:
        return self._online

    async def record_count(
        self,
        session_id: UUID,
        product_id: UUID,
        observation: Union[CountObservation, dict],
    ) -> Optional[Count]:
        """Returns the server's Count, or None if the observation was queued."""
        observation = parse_observation(observation, product_id)
        if observation.observed_at is None:
            observation = observation.model_copy(update={"observed_at": utcnow()})
        key = str(uuid4())

        if not self._online:
            self.log.append(session_id, product_id, observation, idempotency_key=key)
            return None

        try:
            return await self.submit(session_id, product_id, observation, key)
        except (OSError, asyncio.TimeoutError, StoreUnavailable) as e:
            logger.warning("submit failed, switching to offline", extra={"error": str(e)})
            self._online = False
            # same key: if the server did get it, the replay is a no-op
            self.log.append(session_id, product_id, observation, idempotency_key=key)
            return None

    def on_offline(self) -> None:
        if self._online:
            logger.info("connection lost")
        self._online = False

    async def on_online(self) -> SyncReport:
        self._online = True
        logger.info("connection restored")
        return await self.flush()

    async def flush(self) -> SyncReport:
        async with self._flush_lock:
            report = SyncReport()
            for entry in self.log.entries():
                if not self._online:
                    break
                try:
                    await self.submit(entry.session_id, entry.product_id, entry.observation, entry.idempotency_key)
                except SessionNotActive as e:
                    stale = StaleSession(e.session_id, e.status)
                    report.dead_lettered.append(self.log.dead_letter(entry, stale))
                except (SessionNotFound, InvalidObservation) as e:
                    report.dead_lettered.append(self.log.dead_letter(entry, e))
                except (OSError, asyncio.TimeoutError, StoreUnavailable) as e:
                    # retryable: keep this entry and everything after it, in order
                    logger.warning("flush interrupted", extra={"seq": entry.seq, "error": str(e)})
                    self._online = False
                    break
                else:
                    self.log.remove(entry.seq)
                    report.synced.append(entry)

            report.pending = len(self.log)
            logger.info(
                "offline flush finished",
                extra={"synced": len(report.synced), "dead_lettered": len(report.dead_lettered), "pending": report.pending},
            )
            return report
