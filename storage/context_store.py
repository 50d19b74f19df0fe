"""
Versioned context store.

Agents persist their outputs here under ``(run_id, agent_id, context_key)``.
Every write creates a new integer version; exactly one version per key is
active. Payloads live in a blob store, while the version index (and the
summary used for cheap listings) stays in process memory.

Append mode is type-directed:

    str  + str   -> joined with a blank line
    list + list  -> concatenated
    dict + dict  -> shallow merge, new keys win

Any other combination is written as an overwrite.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.errors import SizeLimitExceeded, VersionConflict
from core.types import ContextWriteMode, utcnow

from .blob import InMemoryBlobStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MiB
SUMMARY_TEXT_LENGTH = 200
SUMMARY_MAX_KEYS = 5

ContextKey = Tuple[str, str, str]


@dataclass
class ContextRecord:
    """One stored version of a context artifact."""
    run_id: str
    agent_id: str
    context_key: str
    version: int
    storage_path: str
    size_bytes: int
    summary: str
    content_type: str
    mode: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    data: Any = None

    def to_dict(self, include_data: bool = True) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "run_id": self.run_id,
            "agent_id": self.agent_id,
            "context_key": self.context_key,
            "version": self.version,
            "storage_path": self.storage_path,
            "size_bytes": self.size_bytes,
            "is_active": self.is_active,
            "summary": self.summary,
            "content_type": self.content_type,
            "mode": self.mode,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }
        if include_data:
            result["data"] = self.data
        return result


@dataclass
class WriteResult:
    context_id: str
    version: int
    size_bytes: int
    summary: str
    storage_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_id": self.context_id,
            "version": self.version,
            "size_bytes": self.size_bytes,
            "summary": self.summary,
            "storage_path": self.storage_path,
        }


def summarize(data: Any) -> str:
    if isinstance(data, str):
        if len(data) > SUMMARY_TEXT_LENGTH:
            return data[:SUMMARY_TEXT_LENGTH] + "..."
        return data
    if isinstance(data, list):
        return f"List with {len(data)} items"
    if isinstance(data, dict):
        return f"Object with keys: {', '.join(list(data)[:SUMMARY_MAX_KEYS])}"
    return str(data)[:SUMMARY_TEXT_LENGTH]


def merge_append(previous: Any, new: Any) -> Any:
    """Combine an existing payload with an appended one."""
    if isinstance(previous, str) and isinstance(new, str):
        return f"{previous}\n\n{new}"
    if isinstance(previous, list) and isinstance(new, list):
        return previous + new
    if isinstance(previous, dict) and isinstance(new, dict):
        return {**previous, **new}
    logger.debug(
        "Append of %s onto %s is not mergeable; writing as overwrite",
        type(new).__name__, type(previous).__name__,
    )
    return new


def _encode(data: Any) -> Tuple[str, bytes]:
    if isinstance(data, str):
        return "text", data.encode("utf-8")
    return "json", json.dumps(data, indent=2, default=str).encode("utf-8")


def _decode(content_type: str, payload: bytes) -> Any:
    text = payload.decode("utf-8")
    if content_type == "text":
        return text
    return json.loads(text)


class ContextStore:
    """Thread-safe versioned key/value store for agent outputs."""

    def __init__(
        self,
        blob_store: Any = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.blob_store = blob_store if blob_store is not None else InMemoryBlobStore()
        self.max_bytes = max_bytes
        self._clock = clock
        self._records: Dict[ContextKey, List[ContextRecord]] = {}
        self._next_version: Dict[ContextKey, int] = {}
        self._key_locks: Dict[ContextKey, threading.Lock] = {}
        self._lock = threading.Lock()

    def _key_lock(self, key: ContextKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _active(self, key: ContextKey) -> Optional[ContextRecord]:
        with self._lock:
            active = [r for r in self._records.get(key, []) if r.is_active]
        if len(active) > 1:
            raise VersionConflict(f"{len(active)} active versions for {'/'.join(key)}")
        return active[0] if active else None

    def write(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        data: Any,
        mode: Union[str, ContextWriteMode] = ContextWriteMode.OVERWRITE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WriteResult:
        """Store ``data`` as the next version of ``key`` and make it active."""
        mode = ContextWriteMode(mode.value if isinstance(mode, ContextWriteMode) else mode)
        context_key = (run_id, agent_id, key)

        with self._key_lock(context_key):
            new_data = data
            current = self._active(context_key)
            if mode == ContextWriteMode.APPEND and current is not None:
                previous = _decode(current.content_type, self.blob_store.get(current.storage_path))
                new_data = merge_append(previous, data)

            content_type, payload = _encode(new_data)
            size_bytes = len(payload)
            if size_bytes > self.max_bytes:
                raise SizeLimitExceeded(size_bytes, self.max_bytes)

            with self._lock:
                version = self._next_version.get(context_key, 0) + 1
                self._next_version[context_key] = version

            created_at = self._clock()
            suffix = "txt" if content_type == "text" else "json"
            storage_path = (
                f"{run_id}/{agent_id}/{key}_v{version}_{int(created_at.timestamp() * 1000)}.{suffix}"
            )
            self.blob_store.put(storage_path, payload)

            record = ContextRecord(
                run_id=run_id,
                agent_id=agent_id,
                context_key=key,
                version=version,
                storage_path=storage_path,
                size_bytes=size_bytes,
                summary=summarize(new_data),
                content_type=content_type,
                mode=mode.value,
                metadata=dict(metadata or {}),
                created_at=created_at,
            )
            with self._lock:
                versions = self._records.setdefault(context_key, [])
                active = [r for r in versions if r.is_active]
                if len(active) > 1:
                    raise VersionConflict(f"{len(active)} active versions for {run_id}/{agent_id}/{key}")
                for previous_record in active:
                    previous_record.is_active = False
                versions.append(record)

        logger.debug(
            "Context written: run=%s agent=%s key=%s v%d (%d bytes, %s)",
            run_id, agent_id, key, version, size_bytes, mode.value,
        )
        return WriteResult(record.id, version, size_bytes, record.summary, storage_path)

    def read(
        self,
        run_id: str,
        agent_id: Optional[str] = None,
        key: Optional[str] = None,
        summary_only: bool = False,
        version: Optional[int] = None,
    ) -> Union[Optional[ContextRecord], List[ContextRecord]]:
        """
        Read contexts for a run.

        With ``key`` the single matching record (or None) is returned,
        otherwise a list ordered newest first. The active version is read
        unless ``version`` names a retained one. ``summary_only`` skips the
        blob store entirely.
        """
        with self._lock:
            candidates = [
                record
                for (record_run, record_agent, record_key), records in self._records.items()
                if record_run == run_id
                and (agent_id is None or record_agent == agent_id)
                and (key is None or record_key == key)
                for record in records
            ]
        if version is not None:
            candidates = [r for r in candidates if r.version == version]
        else:
            candidates = [r for r in candidates if r.is_active]
        candidates.sort(key=lambda r: (r.created_at, r.version), reverse=True)

        results = [self._materialise(r, summary_only) for r in candidates]
        if key is not None:
            return results[0] if results else None
        return results

    def _materialise(self, record: ContextRecord, summary_only: bool) -> ContextRecord:
        if summary_only:
            return replace(record, data=None)
        payload = self.blob_store.get(record.storage_path)
        return replace(record, data=_decode(record.content_type, payload))

    def list_contexts(self, run_id: str, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active context summaries for a run."""
        return [r.to_dict(include_data=False) for r in self.read(run_id, agent_id, summary_only=True)]

    def versions(self, run_id: str, agent_id: str, key: str) -> List[Dict[str, Any]]:
        """Retained version history of one key, newest first."""
        with self._lock:
            records = list(self._records.get((run_id, agent_id, key), []))
        return [r.to_dict(include_data=False) for r in sorted(records, key=lambda r: r.version, reverse=True)]

    def sweep(self, run_id: Optional[str] = None, older_than: timedelta = timedelta(days=30)) -> int:
        """Delete inactive versions created before ``older_than`` ago."""
        cutoff = self._clock() - older_than
        doomed: List[ContextRecord] = []
        with self._lock:
            for context_key, records in self._records.items():
                if run_id is not None and context_key[0] != run_id:
                    continue
                stale = [r for r in records if not r.is_active and r.created_at < cutoff]
                if stale:
                    doomed.extend(stale)
                    self._records[context_key] = [r for r in records if r not in stale]

        if doomed:
            self.blob_store.delete([r.storage_path for r in doomed])
            logger.info("Swept %d inactive context versions older than %s", len(doomed), older_than)
        return len(doomed)

    def delete_run(self, run_id: str) -> int:
        """Delete every version of every context a run wrote."""
        with self._lock:
            keys = [k for k in self._records if k[0] == run_id]
            doomed = [r for k in keys for r in self._records.pop(k)]
            for k in keys:
                self._next_version.pop(k, None)
                self._key_locks.pop(k, None)

        if doomed:
            self.blob_store.delete([r.storage_path for r in doomed])
        return len(doomed)
