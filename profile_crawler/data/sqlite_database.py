"""
SQLite database connection and management utilities.
"""

import sqlite3
from typing import Optional, Any, Dict, List
from contextlib import contextmanager
import logging
from pathlib import Path

from profile_crawler.utils.errors import DatabaseError


logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS resumes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        profile_url TEXT NOT NULL UNIQUE,
        name TEXT,
        session_id TEXT,
        search_query TEXT,
        raw_data TEXT,  -- JSON string
        scrape_status TEXT NOT NULL DEFAULT 'pending',
        scrape_attempts INTEGER NOT NULL DEFAULT 0,
        last_scrape_attempt TIMESTAMP,
        profile_scrape_error TEXT,
        full_profile_scraped INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        profile_url TEXT NOT NULL UNIQUE,
        search_query TEXT,
        data TEXT NOT NULL,  -- JSON string
        scraped_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS scrape_checkpoints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        search_query TEXT NOT NULL,
        current_page INTEGER NOT NULL DEFAULT 1,
        total_pages INTEGER,
        last_processed_url TEXT,
        last_processed_index INTEGER NOT NULL DEFAULT 0,
        profiles_scraped INTEGER NOT NULL DEFAULT 0,
        profiles_failed INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'running',
        options TEXT,  -- JSON string
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_resumes_session ON resumes(session_id);",
    "CREATE INDEX IF NOT EXISTS idx_resumes_status ON resumes(scrape_status, scrape_attempts);",
    "CREATE INDEX IF NOT EXISTS idx_resumes_query ON resumes(search_query);",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_query_status ON scrape_checkpoints(search_query, status);",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_updated ON scrape_checkpoints(updated_at);",
]


class SQLiteDatabaseManager:
    """Manages SQLite database connections and operations."""

    def __init__(self, database_path: str = "data/profile_crawler.db"):
        """
        Initialize SQLite database manager.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        """Initialize the database and create tables."""
        try:
            self.create_tables()
            logger.info(f"SQLite database initialized at {self.database_path}")
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                "Failed to initialize SQLite database",
                {"error": str(e)}
            )

    @contextmanager
    def get_connection(self):
        """
        Get a database connection.

        Yields:
            SQLite database connection
        """
        conn = None
        try:
            conn = sqlite3.connect(
                str(self.database_path),
                timeout=30.0,
                check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            raise DatabaseError(
                "SQLite database operation failed",
                {"error": str(e)}
            )
        finally:
            if conn:
                conn.close()

    @contextmanager
    def get_cursor(self):
        """
        Get a database cursor that commits on success and rolls back on error.

        Yields:
            SQLite database cursor
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def execute_query(
        self,
        query: str,
        params: Optional[tuple] = None,
        fetch: bool = True
    ) -> Optional[List[sqlite3.Row]]:
        """
        Execute a SQL query.

        Args:
            query: SQL query string
            params: Query parameters
            fetch: Whether to fetch results

        Returns:
            Query results if fetch=True, None otherwise
        """
        with self.get_cursor() as cursor:
            cursor.execute(query, params or ())
            if fetch:
                return cursor.fetchall()
            return None

    def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute a write statement and return the affected row count."""
        with self.get_cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.rowcount

    def execute_many(
        self,
        query: str,
        params_list: List[tuple]
    ) -> None:
        """
        Execute a query with multiple parameter sets.

        Args:
            query: SQL query string
            params_list: List of parameter tuples
        """
        with self.get_cursor() as cursor:
            cursor.executemany(query, params_list)

    def create_tables(self) -> None:
        """Create database tables and indexes if they don't exist."""
        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            cursor = conn.cursor()
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            conn.commit()
            logger.info("Database tables and indexes created successfully")

    def get_table_counts(self) -> Dict[str, Any]:
        """Row counts per table, used by health reporting."""
        counts = {}
        for table in ("resumes", "profiles", "scrape_checkpoints"):
            rows = self.execute_query(f"SELECT COUNT(*) AS count FROM {table}")
            counts[table] = rows[0]["count"] if rows else 0
        return counts

    def health_check(self) -> bool:
        """Whether the database answers a trivial query."""
        try:
            self.execute_query("SELECT 1")
            return True
        except DatabaseError as e:
            logger.error(f"SQLite health check failed: {e.details}")
            return False
