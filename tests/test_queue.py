import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from job_sync.config import QueueConfig
from job_sync.errors import InvalidTransitionError, JobNotFoundError
from job_sync.models import EnrichmentStatus
from job_sync.queue import RECLAIM_ERROR, EnrichmentQueue
from job_sync.store import JobStore

from tests.helpers import open_store, seed_jobs

T0 = datetime(2025, 8, 10, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class TestEnrichmentQueue(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = open_store(self._tmp.name)
        self.clock = Clock()
        self.queue = EnrichmentQueue(self.store, clock=self.clock)

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def _fail(self, job_id: int, times: int) -> None:
        for _ in range(times):
            self.store.update_enrichment_fields(job_id, {"enrichment_status": "pending"})
            claimed = self.queue.select_next()
            self.assertEqual(claimed.id, job_id)
            self.queue.mark_failed(job_id, "provider timeout")

    def test_empty_queue_returns_none(self):
        self.assertIsNone(self.queue.select_next())

    def test_fresh_job_lifecycle(self):
        [job_id] = seed_jobs(self.store, 1)

        job = self.queue.select_next()
        self.assertEqual(job.id, job_id)
        self.assertEqual(job.enrichment_status, EnrichmentStatus.in_progress)
        self.assertEqual(job.attempt_count, 1)
        self.assertEqual(job.last_attempt_at, T0)

        self.queue.mark_enriched(job_id)
        snap = self.queue.progress_snapshot()
        self.assertEqual((snap.enriched, snap.pending, snap.in_progress, snap.total), (1, 0, 0, 1))
        self.assertIsNone(self.queue.select_next())

    def test_failed_job_waits_out_cooldown_after_quick_retries(self):
        [job_id] = seed_jobs(self.store, 1)
        self._fail(job_id, 3)
        record = self.store.get(job_id)
        self.assertEqual(record.attempt_count, 3)
        self.assertEqual(record.enrichment_status, EnrichmentStatus.failed)

        self.assertIsNone(self.queue.select_next())
        self.clock.advance(hours=23)
        self.assertIsNone(self.queue.select_next())
        self.clock.advance(hours=2)
        job = self.queue.select_next()
        self.assertEqual(job.id, job_id)
        self.assertEqual(job.attempt_count, 4)

    def test_failed_job_retried_while_under_quick_limit(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()
        self.queue.mark_failed(job_id, "boom")

        job = self.queue.select_next()
        self.assertEqual(job.id, job_id)
        self.assertEqual(job.attempt_count, 2)

    def test_inactive_jobs_are_never_selected(self):
        [job_id] = seed_jobs(self.store, 1)
        self.store.update_enrichment_fields(job_id, {"status": "expired"})
        self.assertIsNone(self.queue.select_next())

    def test_pending_selected_before_failed_then_oldest_attempt(self):
        ids = seed_jobs(self.store, 3)
        self.queue.select_next()
        self.queue.mark_failed(ids[0], "boom")

        order = []
        while (job := self.queue.select_next()) is not None:
            order.append(job.id)
            self.queue.mark_enriched(job.id)
            self.clock.advance(minutes=1)
        self.assertEqual(order, [ids[1], ids[2], ids[0]])

    def test_older_failure_retried_first(self):
        ids = seed_jobs(self.store, 2)
        self.queue.select_next()
        self.clock.advance(minutes=5)
        self.queue.select_next()
        self.queue.mark_failed(ids[1], "second")
        self.clock.advance(minutes=5)
        self.queue.mark_failed(ids[0], "first")
        # ids[1] failed earlier, so its last attempt is older.
        self.assertEqual(self.queue.select_next().id, ids[1])

    def test_mark_failed_keeps_attempt_count(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()
        self.clock.advance(seconds=30)
        self.queue.mark_failed(job_id, "rate limited")

        record = self.store.get(job_id)
        self.assertEqual(record.attempt_count, 1)
        self.assertEqual(record.enrichment_error, "rate limited")
        self.assertEqual(record.last_attempt_at, T0 + timedelta(seconds=30))

    def test_mark_enriched_is_idempotent(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()
        self.queue.mark_failed(job_id, "first try")
        self.queue.select_next()
        self.queue.mark_enriched(job_id)
        before = self.store.get(job_id)

        self.clock.advance(minutes=1)
        self.queue.mark_enriched(job_id)
        after = self.store.get(job_id)

        self.assertEqual(after.enrichment_status, EnrichmentStatus.enriched)
        self.assertEqual(after.attempt_count, before.attempt_count)
        self.assertEqual(after.enrichment_error, before.enrichment_error)
        self.assertEqual(after.enriched_at, T0 + timedelta(minutes=1))

    def test_reset_to_pending_clears_history(self):
        [job_id] = seed_jobs(self.store, 1)
        self._fail(job_id, 3)

        self.queue.reset_to_pending(job_id)

        record = self.store.get(job_id)
        self.assertEqual(record.enrichment_status, EnrichmentStatus.pending)
        self.assertEqual(record.attempt_count, 0)
        self.assertIsNone(record.enrichment_error)
        self.assertEqual(self.queue.select_next().id, job_id)

    def test_reset_refuses_enriched_and_unknown_jobs(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()
        self.queue.mark_enriched(job_id)

        with self.assertRaises(InvalidTransitionError):
            self.queue.reset_to_pending(job_id)
        with self.assertRaises(JobNotFoundError):
            self.queue.reset_to_pending(999)
        with self.assertRaises(JobNotFoundError):
            self.queue.mark_failed(999, "x")
        with self.assertRaises(JobNotFoundError):
            self.queue.mark_enriched(999)

    def test_reset_checks_status_at_write_time(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()
        claimed_snapshot = self.store.get(job_id)
        self.queue.mark_enriched(job_id)

        with patch.object(self.store, "get", return_value=claimed_snapshot):
            with self.assertRaises(InvalidTransitionError):
                self.queue.reset_to_pending(job_id)

        record = self.store.get(job_id)
        self.assertEqual(record.enrichment_status, EnrichmentStatus.enriched)
        self.assertEqual(record.attempt_count, 1)

    def test_reset_recovers_in_progress_job(self):
        [job_id] = seed_jobs(self.store, 1)
        self.queue.select_next()

        self.queue.reset_to_pending(job_id)

        self.assertEqual(self.store.get(job_id).enrichment_status, EnrichmentStatus.pending)

    def test_max_attempts_caps_retries(self):
        queue = EnrichmentQueue(self.store, QueueConfig(max_attempts=2), clock=self.clock)
        [job_id] = seed_jobs(self.store, 1)
        for _ in range(2):
            queue.select_next()
            queue.mark_failed(job_id, "boom")

        self.clock.advance(days=7)
        self.assertIsNone(queue.select_next())

    def test_reclaim_stale_only_touches_old_claims(self):
        ids = seed_jobs(self.store, 2)
        self.queue.select_next()
        self.clock.advance(minutes=90)
        self.queue.select_next()

        self.assertEqual(self.queue.reclaim_stale(timedelta(hours=1)), 1)
        old, fresh = self.store.get(ids[0]), self.store.get(ids[1])
        self.assertEqual(old.enrichment_status, EnrichmentStatus.failed)
        self.assertEqual(old.enrichment_error, RECLAIM_ERROR)
        self.assertEqual(old.attempt_count, 1)
        self.assertEqual(fresh.enrichment_status, EnrichmentStatus.in_progress)

    def test_list_all_job_statuses_in_selection_order(self):
        ids = seed_jobs(self.store, 2)
        self.queue.select_next()
        self.queue.mark_failed(ids[0], "boom")

        rows = self.queue.list_all_job_statuses()
        self.assertEqual([r.id for r in rows], [ids[1], ids[0]])
        self.assertEqual(rows[1].enrichment_error, "boom")


class TestConcurrentSelection(unittest.TestCase):
    def test_one_eligible_job_claimed_once(self):
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "jobs.db"
            with JobStore(db_path) as seed:
                seed_jobs(seed, 1)

            workers = 8
            stores = [JobStore(db_path) for _ in range(workers)]
            barrier = threading.Barrier(workers)
            results = []
            results_lock = threading.Lock()

            def claim(store):
                barrier.wait()
                job = EnrichmentQueue(store).select_next()
                with results_lock:
                    results.append(job)

            threads = [threading.Thread(target=claim, args=(s,)) for s in stores]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            for s in stores:
                s.close()

            claimed = [r for r in results if r is not None]
            self.assertEqual(len(results), workers)
            self.assertEqual(len(claimed), 1)
            self.assertEqual(claimed[0].attempt_count, 1)

    def test_concurrent_claims_never_overlap(self):
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "jobs.db"
            with JobStore(db_path) as seed:
                ids = seed_jobs(seed, 10)

            stores = [JobStore(db_path) for _ in range(4)]
            claimed: list[int] = []
            lock = threading.Lock()

            def drain(store):
                queue = EnrichmentQueue(store)
                while (job := queue.select_next()) is not None:
                    with lock:
                        claimed.append(job.id)

            threads = [threading.Thread(target=drain, args=(s,)) for s in stores]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            for s in stores:
                s.close()

            self.assertEqual(sorted(claimed), sorted(ids))


if __name__ == "__main__":
    unittest.main()
