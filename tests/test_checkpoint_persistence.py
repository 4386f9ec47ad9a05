"""
Tests for checkpoint storage and upsert-by-URL persistence.
"""

import json
import pytest
from datetime import datetime, timedelta
from hypothesis import given, settings, strategies as st, HealthCheck
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from profile_crawler.data.repository import ProfileRepository, ResumeRepository
from profile_crawler.services.checkpoint import Checkpoint, CheckpointStore
from profile_crawler.utils.errors import CheckpointError


class MutableNow:
    """Settable clock for checkpoint timestamps."""

    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def checkpoint_store(db_manager):
    return CheckpointStore(db_manager)


@pytest.fixture
def resume_repo(db_manager):
    return ResumeRepository(db_manager)


@pytest.fixture
def profile_repo(db_manager):
    return ProfileRepository(db_manager)


class TestCheckpointStore:
    """Checkpoint lifecycle."""

    def test_generate_session_id_format(self):
        session_id = CheckpointStore.generate_session_id("senior python developer berlin")
        slug, timestamp, suffix = session_id.rsplit("_", 2)

        assert slug == "senior_python_develo"
        assert timestamp.isdigit()
        assert len(suffix) == 7
        assert CheckpointStore.generate_session_id("x") != CheckpointStore.generate_session_id("x")

    def test_create_and_get(self, checkpoint_store):
        checkpoint = checkpoint_store.create_checkpoint("s1", "python", {"max_pages": 4})

        assert isinstance(checkpoint, Checkpoint)
        assert checkpoint.status == "running"
        assert checkpoint.current_page == 1
        assert checkpoint.total_pages == 4
        assert checkpoint.options == {"max_pages": 4}

    def test_create_is_an_upsert(self, checkpoint_store):
        checkpoint_store.create_checkpoint("s1", "python")
        checkpoint_store.pause_checkpoint("s1")
        checkpoint_store.create_checkpoint("s1", "python")

        assert checkpoint_store.get_checkpoint("s1").status == "running"
        assert len(checkpoint_store.list_checkpoints()) == 1

    def test_update_fields(self, checkpoint_store):
        checkpoint_store.create_checkpoint("s1", "python")
        checkpoint_store.update_checkpoint(
            "s1", current_page=3, profiles_scraped=12, last_processed_url="u12",
            options={"mode": "fast"}
        )

        checkpoint = checkpoint_store.get_checkpoint("s1")
        assert checkpoint.current_page == 3
        assert checkpoint.profiles_scraped == 12
        assert checkpoint.last_processed_url == "u12"
        assert checkpoint.options == {"mode": "fast"}

    def test_update_rejects_unknown_fields(self, checkpoint_store):
        checkpoint_store.create_checkpoint("s1", "python")
        with pytest.raises(CheckpointError) as exc_info:
            checkpoint_store.update_checkpoint("s1", bogus=1, current_page=4)

        assert exc_info.value.details["fields"] == ["bogus"]
        assert checkpoint_store.get_checkpoint("s1").current_page != 4

    def test_stop_checkpoint_records_final_progress(self, checkpoint_store):
        checkpoint_store.create_checkpoint("s1", "python")

        checkpoint_store.stop_checkpoint("s1", current_page=2, profiles_scraped=7)

        checkpoint = checkpoint_store.get_checkpoint("s1")
        assert checkpoint.status == "stopped"
        assert checkpoint.current_page == 2
        assert checkpoint.profiles_scraped == 7

    def test_latest_incomplete_checkpoint(self, db_manager):
        now = MutableNow(datetime(2024, 1, 1, 10, 0, 0))
        store = CheckpointStore(db_manager, now_func=now)
        store.create_checkpoint("old", "python")
        now.value += timedelta(minutes=5)
        store.create_checkpoint("new", "python")
        now.value += timedelta(minutes=5)
        store.create_checkpoint("done", "python")
        store.complete_checkpoint("done")
        store.create_checkpoint("other", "golang")

        latest = store.get_latest_incomplete_checkpoint("python")
        assert latest.session_id == "new"
        assert store.get_latest_incomplete_checkpoint("rust") is None

    @pytest.mark.parametrize("status,resumable", [
        ("running", True),
        ("paused", True),
        ("completed", False),
        ("failed", False),
        ("stopped", False),
    ])
    def test_can_resume(self, checkpoint_store, status, resumable):
        checkpoint_store.create_checkpoint("s1", "python")
        checkpoint_store.set_status("s1", status)

        assert CheckpointStore.can_resume(checkpoint_store.get_checkpoint("s1")) is resumable

    def test_can_resume_none(self):
        assert CheckpointStore.can_resume(None) is False

    def test_resume_position(self, checkpoint_store):
        checkpoint_store.create_checkpoint("s1", "python")
        checkpoint_store.update_checkpoint("s1", current_page=4, last_processed_url="u", last_processed_index=9)

        position = CheckpointStore.get_resume_position(checkpoint_store.get_checkpoint("s1"))
        assert position == {"start_page": 4, "last_url": "u", "last_index": 9}

    def test_cleanup_only_removes_old_completed(self, db_manager):
        now = MutableNow(datetime(2024, 1, 1))
        store = CheckpointStore(db_manager, now_func=now)
        store.create_checkpoint("old-done", "q")
        store.complete_checkpoint("old-done")
        store.create_checkpoint("old-running", "q")

        now.value += timedelta(days=40)
        store.create_checkpoint("recent-done", "q")
        store.complete_checkpoint("recent-done")

        assert store.cleanup_old_checkpoints(days_old=30) == 1
        assert store.get_checkpoint("old-done") is None
        assert store.get_checkpoint("old-running") is not None
        assert store.get_checkpoint("recent-done") is not None

    def test_stats(self, checkpoint_store):
        checkpoint_store.create_checkpoint("a", "q")
        checkpoint_store.create_checkpoint("b", "q")
        checkpoint_store.update_checkpoint("b", profiles_scraped=5, profiles_failed=2)
        checkpoint_store.fail_checkpoint("b")

        stats = checkpoint_store.get_checkpoint_stats()
        assert stats["total"] == 2
        assert stats["running"] == 1
        assert stats["failed"] == 1
        assert stats["total_profiles_scraped"] == 5
        assert stats["total_profiles_failed"] == 2


class TestResumeRepository:
    """Listing records upsert by profile_url."""

    def test_batch_insert_upserts(self, resume_repo):
        records = [{"profile_url": "u1", "name": "Ann"}, {"profile_url": "u2", "name": "Bob"}]
        assert resume_repo.batch_insert(records, "s1", "python") == 2
        assert resume_repo.batch_insert(records, "s1", "python") == 2

        assert resume_repo.count_all() == 2
        assert resume_repo.count_by_search_query("python") == 2

    def test_records_without_url_are_skipped(self, resume_repo):
        assert resume_repo.batch_insert([{"name": "nobody"}], "s1") == 0
        assert resume_repo.count_all() == 0

    def test_reinsert_preserves_scrape_status(self, resume_repo):
        resume_repo.batch_insert([{"profile_url": "u1"}], "s1")
        resume_repo.update_scrape_attempt("u1", False, "timeout")
        resume_repo.batch_insert([{"profile_url": "u1", "name": "Ann"}], "s1")

        row = resume_repo.get_by_profile_url("u1")
        assert row["scrape_status"] == "failed"
        assert row["scrape_attempts"] == 1
        assert row["name"] == "Ann"
        assert json.loads(row["raw_data"])["name"] == "Ann"

    def test_failed_profiles_respect_attempt_limit(self, resume_repo):
        resume_repo.batch_insert([{"profile_url": "u1"}, {"profile_url": "u2"}], "s1")
        resume_repo.update_scrape_attempt("u1", False, "timeout")
        for _ in range(3):
            resume_repo.update_scrape_attempt("u2", False, "blocked")

        failed = resume_repo.get_failed_profiles(max_attempts=3)
        assert [row["profile_url"] for row in failed] == ["u1"]
        assert failed[0]["profile_scrape_error"] == "timeout"

    def test_session_urls(self, resume_repo, profile_repo):
        resume_repo.batch_insert([{"profile_url": "u1"}, {"profile_url": "u2"}], "s1")
        resume_repo.batch_insert([{"profile_url": "u3"}], "s2")
        profile_repo.save_full_profile("u2", {"headline": "Engineer"})

        assert resume_repo.get_session_urls("s1") == ["u1", "u2"]
        assert resume_repo.get_session_urls("s1", scraped_only=True) == ["u2"]

    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(urls=st.lists(st.sampled_from(["u1", "u2", "u3", "u4"]), min_size=1, max_size=12))
    def test_row_count_equals_distinct_urls(self, db_manager, urls):
        """Re-delivering listing records never duplicates rows."""
        repo = ResumeRepository(db_manager)
        db_manager.execute_update("DELETE FROM resumes")

        for url in urls:
            repo.batch_insert([{"profile_url": url}], "s1")

        assert repo.count_all() == len(set(urls))


class TestProfileRepository:

    def test_save_is_an_upsert_and_flags_resume(self, resume_repo, profile_repo):
        resume_repo.batch_insert([{"profile_url": "u1"}], "s1")

        profile_repo.save_full_profile("u1", {"headline": "Engineer"}, "python")
        profile_repo.save_full_profile("u1", {"headline": "Staff Engineer"})

        assert profile_repo.count_all() == 1
        stored = profile_repo.get_profile("u1")
        assert stored["data"] == {"headline": "Staff Engineer"}
        assert stored["search_query"] == "python"
        assert resume_repo.get_by_profile_url("u1")["full_profile_scraped"] == 1

    def test_missing_profile(self, profile_repo):
        assert profile_repo.get_profile("nope") is None


class TestDatabaseManager:

    def test_table_counts_and_health(self, db_manager, resume_repo):
        resume_repo.batch_insert([{"profile_url": "u1"}], "s1")

        assert db_manager.health_check() is True
        assert db_manager.get_table_counts() == {"resumes": 1, "profiles": 0, "scrape_checkpoints": 0}
