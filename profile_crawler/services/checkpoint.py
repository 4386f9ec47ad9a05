"""
Durable session checkpoints.

A checkpoint mirrors the progress of one crawl session in the
``scrape_checkpoints`` table so that an interrupted session can be resumed
from its last recorded page.
"""

import json
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from profile_crawler.data.sqlite_database import SQLiteDatabaseManager
from profile_crawler.utils.errors import CheckpointError, DatabaseError
from profile_crawler.utils.logging import get_business_logger


RESUMABLE_STATUSES = ("running", "paused")

UPDATABLE_FIELDS = frozenset({
    "current_page", "total_pages", "last_processed_url", "last_processed_index",
    "profiles_scraped", "profiles_failed", "error_count", "status", "options",
})


@dataclass
class Checkpoint:
    """One row of ``scrape_checkpoints``."""
    session_id: str
    search_query: str
    current_page: int = 1
    total_pages: Optional[int] = None
    last_processed_url: Optional[str] = None
    last_processed_index: int = 0
    profiles_scraped: int = 0
    profiles_failed: int = 0
    error_count: int = 0
    status: str = "running"
    options: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Checkpoint":
        data = dict(row)
        data.pop("id", None)
        raw_options = data.get("options")
        try:
            data["options"] = json.loads(raw_options) if raw_options else {}
        except (TypeError, json.JSONDecodeError):
            data["options"] = {}
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "search_query": self.search_query,
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "last_processed_url": self.last_processed_url,
            "last_processed_index": self.last_processed_index,
            "profiles_scraped": self.profiles_scraped,
            "profiles_failed": self.profiles_failed,
            "error_count": self.error_count,
            "status": self.status,
            "options": self.options,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class CheckpointStore:
    """Reads and writes session checkpoints."""

    def __init__(self, db_manager: SQLiteDatabaseManager,
                 now_func: Callable[[], datetime] = datetime.now):
        """
        Args:
            db_manager: SQLite database manager with the schema created
            now_func: Clock for timestamps, replaceable in tests
        """
        self.db_manager = db_manager
        self._now = now_func
        self.logger = get_business_logger("checkpoint")

    def _timestamp(self) -> str:
        return self._now().isoformat(timespec="seconds")

    @staticmethod
    def generate_session_id(search_query: str) -> str:
        """Slug of the query, millisecond timestamp and a random suffix."""
        slug = re.sub(r"\s+", "_", (search_query or "session")[:20])
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
        return f"{slug}_{int(time.time() * 1000)}_{suffix}"

    def create_checkpoint(self, session_id: str, search_query: str,
                          options: Optional[Dict[str, Any]] = None) -> Checkpoint:
        """
        Create a running checkpoint, or reset an existing one to running.

        Raises:
            CheckpointError: If the row cannot be written
        """
        options = options or {}
        now = self._timestamp()
        try:
            self.db_manager.execute_update(
                """
                INSERT INTO scrape_checkpoints
                    (session_id, search_query, total_pages, status, options, created_at, updated_at)
                VALUES (?, ?, ?, 'running', ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    status = 'running',
                    options = excluded.options,
                    updated_at = excluded.updated_at
                """,
                (
                    session_id,
                    search_query,
                    options.get("max_pages"),
                    json.dumps(options, default=str),
                    now,
                    now,
                )
            )
        except DatabaseError as e:
            raise CheckpointError(
                f"Failed to create checkpoint {session_id}",
                {"session_id": session_id, **e.details}
            )

        self.logger.info(f"Checkpoint created: {session_id}")
        return self.get_checkpoint(session_id)

    def update_checkpoint(self, session_id: str, **updates) -> None:
        """
        Update selected checkpoint fields.

        Raises:
            CheckpointError: On unknown fields or write failure
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise CheckpointError(
                "Unknown checkpoint fields",
                {"fields": sorted(unknown)}
            )
        if not updates:
            return

        if "options" in updates and not isinstance(updates["options"], str):
            updates["options"] = json.dumps(updates["options"], default=str)

        columns = sorted(updates)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = tuple(updates[column] for column in columns) + (self._timestamp(), session_id)

        try:
            self.db_manager.execute_update(
                f"UPDATE scrape_checkpoints SET {assignments}, updated_at = ? WHERE session_id = ?",
                params
            )
        except DatabaseError as e:
            raise CheckpointError(
                f"Failed to update checkpoint {session_id}",
                {"session_id": session_id, **e.details}
            )

    def get_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        rows = self.db_manager.execute_query(
            "SELECT * FROM scrape_checkpoints WHERE session_id = ?", (session_id,)
        )
        return Checkpoint.from_row(rows[0]) if rows else None

    def get_latest_incomplete_checkpoint(self, search_query: str) -> Optional[Checkpoint]:
        """Most recently updated running or paused checkpoint for ``search_query``."""
        rows = self.db_manager.execute_query(
            """
            SELECT * FROM scrape_checkpoints
            WHERE search_query = ? AND status IN ('running', 'paused')
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (search_query,)
        )
        return Checkpoint.from_row(rows[0]) if rows else None

    def list_checkpoints(self, limit: int = 20, status: Optional[str] = None) -> List[Checkpoint]:
        if status:
            rows = self.db_manager.execute_query(
                "SELECT * FROM scrape_checkpoints WHERE status = ? ORDER BY updated_at DESC, id DESC LIMIT ?",
                (status, limit)
            )
        else:
            rows = self.db_manager.execute_query(
                "SELECT * FROM scrape_checkpoints ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,)
            )
        return [Checkpoint.from_row(row) for row in rows]

    def set_status(self, session_id: str, status: str, **updates) -> None:
        self.update_checkpoint(session_id, status=status, **updates)
        self.logger.info(f"Checkpoint {session_id} -> {status}")

    def complete_checkpoint(self, session_id: str, **updates) -> None:
        self.set_status(session_id, "completed", **updates)

    def fail_checkpoint(self, session_id: str, **updates) -> None:
        self.set_status(session_id, "failed", **updates)

    def pause_checkpoint(self, session_id: str, **updates) -> None:
        self.set_status(session_id, "paused", **updates)

    def resume_checkpoint(self, session_id: str) -> None:
        self.set_status(session_id, "running")

    def stop_checkpoint(self, session_id: str, **updates) -> None:
        self.set_status(session_id, "stopped", **updates)

    def cleanup_old_checkpoints(self, days_old: int = 30) -> int:
        """Delete completed checkpoints not updated for ``days_old`` days."""
        cutoff = (self._now() - timedelta(days=days_old)).isoformat(timespec="seconds")
        removed = self.db_manager.execute_update(
            "DELETE FROM scrape_checkpoints WHERE status = 'completed' AND updated_at < ?",
            (cutoff,)
        )
        self.logger.info(f"Checkpoint cleanup removed {removed} rows older than {days_old} days")
        return removed

    def get_checkpoint_stats(self) -> Dict[str, int]:
        rows = self.db_manager.execute_query(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) AS running,
                SUM(CASE WHEN status = 'paused' THEN 1 ELSE 0 END) AS paused,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                SUM(CASE WHEN status = 'stopped' THEN 1 ELSE 0 END) AS stopped,
                SUM(profiles_scraped) AS total_profiles_scraped,
                SUM(profiles_failed) AS total_profiles_failed
            FROM scrape_checkpoints
            """
        )
        return {key: value or 0 for key, value in dict(rows[0]).items()}

    @staticmethod
    def can_resume(checkpoint: Optional[Checkpoint]) -> bool:
        return checkpoint is not None and checkpoint.status in RESUMABLE_STATUSES

    @staticmethod
    def get_resume_position(checkpoint: Checkpoint) -> Dict[str, Any]:
        return {
            "start_page": checkpoint.current_page or 1,
            "last_url": checkpoint.last_processed_url,
            "last_index": checkpoint.last_processed_index or 0,
        }
