import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from job_sync import dashboard
from job_sync.queue import EnrichmentQueue
from job_sync.store import JobStore

from tests.helpers import seed_jobs


class TestStatusAPI(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        db_path = Path(self._tmp.name) / "jobs.db"
        with JobStore(db_path) as store:
            self.ids = seed_jobs(store, 3)
            queue = EnrichmentQueue(store)
            queue.select_next()
            queue.mark_enriched(self.ids[0])
            queue.select_next()
            queue.mark_failed(self.ids[1], "[provider] rate limited")
            sync_id = store.start_sync()
            store.finish_sync(sync_id, status="success", errors=[], jobs_fetched=3, jobs_created=3)

        self._old = dashboard.DB_PATH
        dashboard.DB_PATH = str(db_path)
        self.client = TestClient(dashboard.app)

    def tearDown(self):
        dashboard.DB_PATH = self._old
        self._tmp.cleanup()

    def test_progress(self):
        resp = self.client.get("/api/progress")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual((data["total"], data["enriched"], data["failed"], data["pending"]), (3, 1, 1, 1))
        self.assertEqual(data["percent_enriched"], 33.3)

    def test_jobs_filtered_by_enrichment_status(self):
        resp = self.client.get("/api/jobs?enrichment_status=failed")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["total"], 1)
        self.assertEqual(data["items"][0]["id"], self.ids[1])
        self.assertEqual(data["items"][0]["enrichment_error"], "[provider] rate limited")

        resp = self.client.get("/api/jobs?per_page=2&sort_by=bogus")
        self.assertEqual(resp.json()["pages"], 2)

    def test_job_detail(self):
        resp = self.client.get(f"/api/jobs/{self.ids[0]}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["enrichment_status"], "enriched")
        self.assertEqual(resp.json()["keywords"], ["materials", "quantum"])
        self.assertEqual(self.client.get("/api/jobs/999").status_code, 404)

    def test_reset(self):
        resp = self.client.post(f"/api/jobs/{self.ids[1]}/reset")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"id": self.ids[1], "enrichment_status": "pending", "attempt_count": 0})

        self.assertEqual(self.client.post(f"/api/jobs/{self.ids[0]}/reset").status_code, 409)
        self.assertEqual(self.client.post("/api/jobs/999/reset").status_code, 404)

    def test_runs(self):
        resp = self.client.get("/api/runs")
        self.assertEqual(resp.status_code, 200)
        [run] = resp.json()["items"]
        self.assertEqual(run["status"], "success")
        self.assertEqual(run["errors"], [])
        self.assertEqual(run["jobs_created"], 3)

    def test_read_routes_never_create_a_database(self):
        missing = Path(self._tmp.name) / "absent" / "jobs.db"
        dashboard.DB_PATH = str(missing)
        client = TestClient(dashboard.app, raise_server_exceptions=False)

        self.assertEqual(client.get("/api/progress").status_code, 500)
        self.assertEqual(client.get(f"/api/jobs/{self.ids[0]}").status_code, 500)
        self.assertFalse(missing.parent.exists())


if __name__ == "__main__":
    unittest.main()
