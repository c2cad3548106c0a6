import json
import tempfile
import unittest
from pathlib import Path

from job_sync.tracing import TRACE_FILENAME, TraceRecorder


def _read(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestTraceRecorder(unittest.TestCase):
    def test_start_creates_run_directory_with_context(self):
        with tempfile.TemporaryDirectory() as td:
            recorder = TraceRecorder.start(td, "enrich")
            recorder({"event_type": "llm_call_start", "job_id": 7})
            recorder({"event_type": "llm_call_success", "job_id": 7})

            self.assertEqual(recorder.path.parent.parent, Path(td))
            self.assertTrue(recorder.path.parent.name.endswith(f"-enrich-{recorder.run_context['run_id']}"))
            self.assertEqual(recorder.path.name, TRACE_FILENAME)
            first, second = _read(recorder.path)
            self.assertEqual(first["run_kind"], "enrich")
            self.assertEqual(first["job_id"], 7)
            self.assertIn("timestamp", first)
            self.assertEqual(second["event_type"], "llm_call_success")

    def test_separate_runs_do_not_share_a_file(self):
        with tempfile.TemporaryDirectory() as td:
            a = TraceRecorder.start(td, "sync")
            b = TraceRecorder.start(td, "sync")
            self.assertNotEqual(a.path, b.path)

    def test_unserializable_event_becomes_trace_error(self):
        with tempfile.TemporaryDirectory() as td:
            recorder = TraceRecorder(Path(td), {"run_id": "abc"})
            recorder({"event_type": "llm_call_success", "job_id": 3, "payload": object()})

            [event] = _read(recorder.path)
            self.assertEqual(event["event_type"], "trace_error")
            self.assertEqual(event["run_id"], "abc")
            self.assertEqual(event["job_id"], 3)
            self.assertIn("llm_call_success", event["error"])


if __name__ == "__main__":
    unittest.main()
