"""
Repositories for listing records and full profiles.

Every write is an upsert keyed by ``profile_url``, so reprocessing a page after
a resume never duplicates rows.
"""

from typing import List, Optional, Dict, Any
import json
import logging

from profile_crawler.crawlers.base import ProfileStore, ResumeStore
from profile_crawler.data.sqlite_database import SQLiteDatabaseManager
from profile_crawler.utils.errors import DatabaseError, retry_on_error


logger = logging.getLogger(__name__)

LISTING_COLUMNS = ("name", "profile_url")


class ResumeRepository(ResumeStore):
    """Listing records and their per-profile scrape bookkeeping."""

    def __init__(self, db_manager: SQLiteDatabaseManager):
        """
        Initialize repository with database manager.

        Args:
            db_manager: SQLite database manager
        """
        self.db_manager = db_manager

    @retry_on_error(max_attempts=3, delay=0.2, exceptions=(DatabaseError,))
    def batch_insert(self, records: List[Dict[str, Any]], session_id: str,
                     search_query: Optional[str] = None) -> int:
        """
        Upsert listing records by ``profile_url``.

        Scrape status and attempt counters of existing rows are preserved.

        Returns:
            Number of records written
        """
        rows = []
        for record in records:
            profile_url = record.get("profile_url")
            if not profile_url:
                logger.debug(f"Skipping listing record without profile_url: {record}")
                continue
            rows.append((
                profile_url,
                record.get("name"),
                session_id,
                record.get("search_query", search_query),
                json.dumps(record, ensure_ascii=False, default=str),
            ))

        if not rows:
            return 0

        query = """
        INSERT INTO resumes (profile_url, name, session_id, search_query, raw_data)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(profile_url) DO UPDATE SET
            name = COALESCE(excluded.name, resumes.name),
            session_id = excluded.session_id,
            search_query = COALESCE(excluded.search_query, resumes.search_query),
            raw_data = excluded.raw_data,
            updated_at = CURRENT_TIMESTAMP
        """
        self.db_manager.execute_many(query, rows)
        logger.debug(f"Upserted {len(rows)} listing records for session {session_id}")
        return len(rows)

    def update_scrape_attempt(self, profile_url: str, success: bool,
                              error: Optional[str] = None) -> None:
        """Increment the attempt counter and record the outcome."""
        if success:
            query = """
            UPDATE resumes SET
                scrape_attempts = scrape_attempts + 1,
                last_scrape_attempt = CURRENT_TIMESTAMP,
                scrape_status = 'completed',
                profile_scrape_error = NULL
            WHERE profile_url = ?
            """
            params = (profile_url,)
        else:
            query = """
            UPDATE resumes SET
                scrape_attempts = scrape_attempts + 1,
                last_scrape_attempt = CURRENT_TIMESTAMP,
                scrape_status = 'failed',
                profile_scrape_error = ?
            WHERE profile_url = ?
            """
            params = (error, profile_url)

        self.db_manager.execute_update(query, params)

    def get_failed_profiles(self, max_attempts: int = 3, limit: int = 50) -> List[Dict[str, Any]]:
        """Failed profiles that still have attempts left, oldest attempt first."""
        rows = self.db_manager.execute_query(
            """
            SELECT profile_url, name, search_query, scrape_attempts, profile_scrape_error
            FROM resumes
            WHERE scrape_status = 'failed'
              AND scrape_attempts < ?
            ORDER BY last_scrape_attempt ASC
            LIMIT ?
            """,
            (max_attempts, limit)
        )
        return [dict(row) for row in rows]

    def get_session_urls(self, session_id: str, scraped_only: bool = False) -> List[str]:
        query = "SELECT profile_url FROM resumes WHERE session_id = ?"
        if scraped_only:
            query += " AND full_profile_scraped = 1"
        rows = self.db_manager.execute_query(query + " ORDER BY id", (session_id,))
        return [row["profile_url"] for row in rows]

    def get_by_profile_url(self, profile_url: str) -> Optional[Dict[str, Any]]:
        rows = self.db_manager.execute_query(
            "SELECT * FROM resumes WHERE profile_url = ?", (profile_url,)
        )
        return dict(rows[0]) if rows else None

    def count_by_search_query(self, search_query: str) -> int:
        rows = self.db_manager.execute_query(
            "SELECT COUNT(*) AS count FROM resumes WHERE search_query = ?", (search_query,)
        )
        return rows[0]["count"]

    def count_all(self) -> int:
        rows = self.db_manager.execute_query("SELECT COUNT(*) AS count FROM resumes")
        return rows[0]["count"]


class ProfileRepository(ProfileStore):
    """Full profile records."""

    def __init__(self, db_manager: SQLiteDatabaseManager):
        self.db_manager = db_manager

    @retry_on_error(max_attempts=3, delay=0.2, exceptions=(DatabaseError,))
    def save_full_profile(self, profile_url: str, data: Dict[str, Any],
                          search_query: Optional[str] = None) -> None:
        """Upsert the profile and flag the listing row as fully scraped."""
        payload = json.dumps(data or {}, ensure_ascii=False, default=str)

        with self.db_manager.get_cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO profiles (profile_url, search_query, data)
                VALUES (?, ?, ?)
                ON CONFLICT(profile_url) DO UPDATE SET
                    data = excluded.data,
                    search_query = COALESCE(excluded.search_query, profiles.search_query),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (profile_url, search_query, payload)
            )
            cursor.execute(
                """
                UPDATE resumes SET
                    full_profile_scraped = 1,
                    profile_scrape_error = NULL,
                    updated_at = CURRENT_TIMESTAMP
                WHERE profile_url = ?
                """,
                (profile_url,)
            )

        logger.debug(f"Saved full profile {profile_url}")

    def get_profile(self, profile_url: str) -> Optional[Dict[str, Any]]:
        rows = self.db_manager.execute_query(
            "SELECT profile_url, search_query, data FROM profiles WHERE profile_url = ?",
            (profile_url,)
        )
        if not rows:
            return None
        row = dict(rows[0])
        row["data"] = json.loads(row["data"])
        return row

    def count_all(self) -> int:
        rows = self.db_manager.execute_query("SELECT COUNT(*) AS count FROM profiles")
        return rows[0]["count"]
