from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from sqlitedict import SqliteDict  # type: ignore

from longform_tts.errors import (
    InvalidTransitionError,
    PersistenceError,
    SynthesisError,
    ValidationError,
)
from longform_tts.jobs.models import (
    JobRecord,
    JobState,
    can_transition,
    now_utc,
    parse_iso_ts,
)
from longform_tts.utils.locks import FileLockTimeout, file_lock
from longform_tts.utils.log import logger

_STORAGE_ERRORS = (sqlite3.Error, OSError, FileLockTimeout)


def _remote_may_still_exist(rec: JobRecord) -> bool:
    """
    True when pruning this record could orphan a remote artifact.

    A provider-reported failure produces no artifact, so those records are
    always eligible.
    """
    if rec.state != JobState.ERROR:
        return False
    if rec.remote_cleaned_up:
        return False
    if not (rec.operation_handle and rec.remote_object_name):
        return False
    return rec.error_kind != "provider"


class JobStore:
    """
    Durable job registry (one `jobs` table inside a sqlitedict file).

    Every write is a whole-record read-modify-write inside a critical section:
    an in-process lock plus an advisory file lock shared by every process using
    the same state directory.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.db_path.with_name(self.db_path.name + ".lock")
        self._lock = threading.Lock()
        # Ensure the table exists before the first read.
        with self._guard("init"):
            with self._jobs():
                pass

    def _jobs(self) -> SqliteDict:
        # Open/close per operation (safe + avoids cross-thread SQLite handle issues)
        return SqliteDict(str(self.db_path), tablename="jobs", autocommit=True)

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        try:
            with self._lock, file_lock(self.lock_path):
                yield
        except SynthesisError:
            raise
        except _STORAGE_ERRORS as ex:
            logger.error("job_store_failed", op=op, db=str(self.db_path), error=str(ex))
            raise PersistenceError(f"job store {op} failed: {ex}") from ex

    @staticmethod
    def _check(rec: JobRecord) -> None:
        bad = rec.invariant_violations()
        if bad:
            raise ValidationError(f"Job {rec.id}: " + "; ".join(bad))

    def create(self, record: JobRecord) -> JobRecord:
        if not record.id:
            raise ValidationError("job id required")
        self._check(record)
        with self._guard("create"), self._jobs() as db:
            if record.id in db:
                raise ValidationError(f"Job already exists: {record.id}")
            db[record.id] = record.to_dict()
        logger.info("job_created", job_id=record.id, state=record.state.value)
        return record

    def get(self, id: str) -> JobRecord | None:
        with self._guard("get"), self._jobs() as db:
            raw = db.get(str(id))
        if raw is None:
            return None
        return JobRecord.from_dict(raw)

    def update(self, id: str, **fields: Any) -> JobRecord | None:
        """
        Apply a patch to an existing record; returns None if `id` is unknown.

        A patch carrying `state` must name a legal successor of the stored state.
        """
        fields.pop("id", None)
        with self._guard("update"), self._jobs() as db:
            raw = db.get(str(id))
            if raw is None:
                return None
            current = JobRecord.from_dict(raw)
            if "state" in fields:
                target = JobState(fields["state"])
                if not can_transition(current.state, target):
                    raise InvalidTransitionError(current.id, current.state.value, target.value)
                fields["state"] = target.value
            merged = dict(raw)
            merged.update(fields)
            merged["updated_at"] = now_utc()
            rec = JobRecord.from_dict(merged)
            self._check(rec)
            db[str(id)] = rec.to_dict()
        return rec

    def list(
        self,
        predicate: Callable[[JobRecord], bool] | None = None,
        *,
        state: str | JobState | None = None,
        limit: int | None = None,
    ) -> list[JobRecord]:
        with self._guard("list"), self._jobs() as db:
            items = list(db.values())

        records = [JobRecord.from_dict(v) for v in items]
        if state:
            st = JobState(state)
            records = [r for r in records if r.state == st]
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        records.sort(key=lambda r: (r.started_at, r.id), reverse=True)
        if limit is not None:
            records = records[: max(0, int(limit))]
        return records

    def delete(self, id: str) -> bool:
        if not id:
            return False
        with self._guard("delete"), self._jobs() as db:
            if str(id) not in db:
                return False
            del db[str(id)]
        return True

    def find_by_remote_object(self, remote_object_name: str) -> JobRecord | None:
        name = str(remote_object_name or "")
        if not name:
            return None
        hits = self.list(lambda r: r.remote_object_name == name)
        return hits[0] if hits else None

    def prune_stale(self, retention_days: int = 7, now: float | None = None) -> int:
        """
        Delete terminal records older than the retention window.

        Idempotent; records whose remote artifact may not be cleaned up yet are kept.
        """
        now_ts = time.time() if now is None else float(now)
        cutoff = now_ts - float(max(0, int(retention_days))) * 86400.0
        removed: list[str] = []
        kept = 0
        with self._guard("prune"), self._jobs() as db:
            for key, raw in list(db.items()):
                rec = JobRecord.from_dict(raw)
                if not rec.is_terminal:
                    continue
                ts = parse_iso_ts(rec.updated_at) or parse_iso_ts(rec.started_at)
                if ts is None or ts >= cutoff:
                    continue
                if _remote_may_still_exist(rec):
                    kept += 1
                    continue
                del db[key]
                removed.append(str(key))
        if removed or kept:
            logger.info(
                "job_store_pruned",
                removed=len(removed),
                kept_remote_pending=kept,
                retention_days=int(retention_days),
            )
        return len(removed)
