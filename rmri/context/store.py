"""
Context store.

Agents hand results to the next tier through versioned entries keyed by
``(run_id, agent_id, context_key)``. ``SQLContextStore`` keeps one metadata
row per version in the ``contexts`` table and writes the payload itself as
a JSON artifact on disk, so every intermediate output can be inspected by
hand.

Write modes:
- ``overwrite``: the new value replaces the current one; the version
  counter increments and the previous version is deactivated.
- ``append``: the new value is merged into the current one (lists
  concatenate, dicts merge, strings join with a blank line) and stored as
  the next version. With no current entry it behaves like a first write.
"""

import json
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from rmri.core.errors import ContextStoreError
from rmri.db import get_session
from rmri.db.models import ContextEntry

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 200


class WriteMode(str, Enum):
    OVERWRITE = "overwrite"
    APPEND = "append"


@dataclass
class ContextRecord:
    """Result of a read."""
    run_id: str
    agent_id: str
    context_key: str
    version: int
    data: Any
    summary: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None


@dataclass
class ContextListing:
    """One row of ``list()``."""
    agent_id: str
    context_key: str
    version: int
    summary: str
    size_bytes: int
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "context_key": self.context_key,
            "version": self.version,
            "summary": self.summary,
            "size_bytes": self.size_bytes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def summarize_value(value: Any) -> str:
    """Short human-readable description of a stored value."""
    if isinstance(value, dict):
        return f"Object with keys: {', '.join(list(value.keys())[:10])}"
    if isinstance(value, list):
        return f"Array with {len(value)} items"
    text = str(value)
    if len(text) > SUMMARY_MAX_CHARS:
        return text[:SUMMARY_MAX_CHARS] + "..."
    return text


def merge_values(existing: Any, new: Any) -> Any:
    """Combine an existing value with an appended one."""
    if isinstance(existing, list) and isinstance(new, list):
        return existing + new
    if isinstance(existing, dict) and isinstance(new, dict):
        return {**existing, **new}
    if isinstance(existing, str) and isinstance(new, str):
        return f"{existing}\n\n{new}"
    # mismatched shapes: keep both
    return [existing, new]


class ContextStore(ABC):
    """Interface consumed by the agent processors."""

    @abstractmethod
    def write(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        value: Any,
        mode: WriteMode = WriteMode.OVERWRITE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Store ``value`` and return the new version number."""

    @abstractmethod
    def read(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        summary_only: bool = False,
        version: Optional[int] = None,
    ) -> Optional[ContextRecord]:
        """Read the current (or a specific) version, or None if absent."""

    @abstractmethod
    def list(self, run_id: str, prefix: Optional[str] = None) -> List[ContextListing]:
        """Current entries for a run, optionally filtered by key prefix."""

    def find(self, run_id: str, key: str) -> List[ContextRecord]:
        """Read every current entry named exactly ``key``, across agents."""
        records = []
        for listing in self.list(run_id, prefix=key):
            if listing.context_key != key:
                continue
            record = self.read(run_id, listing.agent_id, key)
            if record is not None:
                records.append(record)
        return records


class SQLContextStore(ContextStore):
    """
    Context store backed by the relational database and JSON artifact files.

    Example:
        ```python
        store = SQLContextStore("artifacts/contexts")
        store.write("run-1", "micro-1", "micro_output_1_p1", output, mode=WriteMode.APPEND)
        record = store.read("run-1", "micro-1", "micro_output_1_p1")
        ```
    """

    def __init__(self, storage_dir: str = "artifacts/contexts", max_context_bytes: int = 10 * 1024 * 1024):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.max_context_bytes = max_context_bytes

        logger.info(f"Initialized SQLContextStore at {self.storage_dir}")

    # ------------------------------------------------------------------
    # Artifact files
    # ------------------------------------------------------------------

    @staticmethod
    def _safe_name(part: str) -> str:
        """Percent-encode one path component; distinct ids never share a file."""
        encoded = quote(part, safe="")
        if encoded in (".", ".."):
            encoded = encoded.replace(".", "%2E")
        return encoded

    def _artifact_path(self, run_id: str, agent_id: str, key: str, version: int) -> Path:
        return (
            self.storage_dir
            / self._safe_name(run_id)
            / self._safe_name(agent_id)
            / f"{self._safe_name(key)}_v{version}.json"
        )

    def _load_artifact(self, path: str) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _active_entry(session, run_id: str, agent_id: str, key: str) -> Optional[ContextEntry]:
        return (
            session.query(ContextEntry)
            .filter(
                ContextEntry.run_id == run_id,
                ContextEntry.agent_id == agent_id,
                ContextEntry.context_key == key,
                ContextEntry.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def _latest_version(session, run_id: str, agent_id: str, key: str) -> int:
        latest = (
            session.query(ContextEntry.version)
            .filter(
                ContextEntry.run_id == run_id,
                ContextEntry.agent_id == agent_id,
                ContextEntry.context_key == key,
            )
            .order_by(ContextEntry.version.desc())
            .first()
        )
        return latest[0] if latest else 0

    # ------------------------------------------------------------------
    # ContextStore API
    # ------------------------------------------------------------------

    def write(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        value: Any,
        mode: WriteMode = WriteMode.OVERWRITE,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        if not run_id or not agent_id or not key:
            raise ContextStoreError("run_id, agent_id and key are required")
        if value is None:
            raise ContextStoreError(f"Refusing to store None under {key}")
        try:
            mode = WriteMode(mode)
        except ValueError:
            raise ContextStoreError(f"Invalid write mode: {mode}")

        with get_session() as session:
            current = self._active_entry(session, run_id, agent_id, key)

            if mode == WriteMode.APPEND and current is not None:
                value = merge_values(self._load_artifact(current.artifact_path), value)

            payload = json.dumps(value, indent=2, default=str)
            size_bytes = len(payload.encode("utf-8"))
            if size_bytes > self.max_context_bytes:
                raise ContextStoreError(
                    f"Context {key} is {size_bytes} bytes; limit is {self.max_context_bytes}"
                )

            version = self._latest_version(session, run_id, agent_id, key) + 1
            path = self._artifact_path(run_id, agent_id, key, version)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(payload, encoding="utf-8")

            if current is not None:
                current.is_active = False

            session.add(ContextEntry(
                run_id=run_id,
                agent_id=agent_id,
                context_key=key,
                version=version,
                is_active=True,
                artifact_path=str(path),
                size_bytes=size_bytes,
                summary=summarize_value(value),
                context_metadata={**(metadata or {}), "mode": mode.value},
            ))

        logger.debug(f"Wrote context {run_id}/{agent_id}/{key} v{version} ({mode.value})")
        return version

    def read(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        summary_only: bool = False,
        version: Optional[int] = None,
    ) -> Optional[ContextRecord]:
        with get_session() as session:
            query = session.query(ContextEntry).filter(
                ContextEntry.run_id == run_id,
                ContextEntry.agent_id == agent_id,
                ContextEntry.context_key == key,
            )
            if version is None:
                query = query.filter(ContextEntry.is_active.is_(True))
            else:
                query = query.filter(ContextEntry.version == version)
            entry = query.first()

            if entry is None:
                return None

            data = None if summary_only else self._load_artifact(entry.artifact_path)
            return ContextRecord(
                run_id=run_id,
                agent_id=agent_id,
                context_key=key,
                version=entry.version,
                data=data,
                summary=entry.summary or "",
                metadata=dict(entry.context_metadata or {}),
                updated_at=entry.updated_at,
            )

    def list(self, run_id: str, prefix: Optional[str] = None) -> List[ContextListing]:
        with get_session() as session:
            query = session.query(ContextEntry).filter(
                ContextEntry.run_id == run_id,
                ContextEntry.is_active.is_(True),
            )
            entries = query.order_by(ContextEntry.id).all()

            return [
                ContextListing(
                    agent_id=e.agent_id,
                    context_key=e.context_key,
                    version=e.version,
                    summary=e.summary or "",
                    size_bytes=e.size_bytes,
                    updated_at=e.updated_at,
                )
                for e in entries
                if prefix is None or e.context_key.startswith(prefix)
            ]

    def versions(self, run_id: str, agent_id: str, key: str) -> List[ContextListing]:
        """Version history for one key, newest first."""
        with get_session() as session:
            entries = (
                session.query(ContextEntry)
                .filter(
                    ContextEntry.run_id == run_id,
                    ContextEntry.agent_id == agent_id,
                    ContextEntry.context_key == key,
                )
                .order_by(ContextEntry.version.desc())
                .all()
            )
            return [
                ContextListing(
                    agent_id=e.agent_id,
                    context_key=e.context_key,
                    version=e.version,
                    summary=e.summary or "",
                    size_bytes=e.size_bytes,
                    updated_at=e.updated_at,
                )
                for e in entries
            ]

    def delete(self, run_id: str, agent_id: str, key: str) -> bool:
        """Soft-delete the current version. Returns False if nothing was active."""
        with get_session() as session:
            current = self._active_entry(session, run_id, agent_id, key)
            if current is None:
                return False
            current.is_active = False
        logger.debug(f"Deleted context {run_id}/{agent_id}/{key}")
        return True

    def cleanup(self, run_id: Optional[str] = None, older_than_days: Optional[int] = None) -> int:
        """
        Remove inactive versions and their artifact files.

        Args:
            run_id: Restrict to one run
            older_than_days: Also remove active entries last updated before this age

        Returns:
            Number of versions removed
        """
        with get_session() as session:
            query = session.query(ContextEntry)
            if run_id is not None:
                query = query.filter(ContextEntry.run_id == run_id)

            doomed = [e for e in query.all() if not e.is_active]
            if older_than_days is not None:
                cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
                for entry in query.filter(ContextEntry.is_active.is_(True)).all():
                    updated = entry.updated_at
                    if updated is not None and updated.tzinfo is None:
                        updated = updated.replace(tzinfo=timezone.utc)
                    if updated is not None and updated < cutoff:
                        doomed.append(entry)

            for entry in doomed:
                Path(entry.artifact_path).unlink(missing_ok=True)
                session.delete(entry)

        if run_id is not None and older_than_days is not None:
            run_dir = self.storage_dir / self._safe_name(run_id)
            if run_dir.exists() and not any(run_dir.rglob("*.json")):
                shutil.rmtree(run_dir)

        logger.info(f"Cleaned up {len(doomed)} context versions")
        return len(doomed)
