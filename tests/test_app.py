import asyncio
import json
import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import app
from service import ProgressTrackingService
from settings import TrackingSettings


def _call(method: str, path: str, payload=None, query: str = "", raw: bytes = None) -> tuple[int, dict, dict]:
    async def _run():
        if raw is not None:
            body = raw
        else:
            body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": query.encode(),
            "headers": [
                (b"host", b"testserver"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
                (b"x-request-id", b"req-42"),
                (b"x-actor", b"coordinator"),
            ],
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_run())
    status = 500
    headers = {}
    body_bytes = b""

    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            headers = {k.decode(): v.decode() for k, v in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")

    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data, headers


def _nodes():
    nodes = [{"id": "F1", "kind": "formation"}]
    for index, minutes in ((1, 60), (2, 40)):
        nodes += [
            {"id": f"M{index}", "kind": "module", "parent_id": "F1", "order_index": index},
            {"id": f"C{index}", "kind": "chapter", "parent_id": f"M{index}"},
            {"id": f"K{index}", "kind": "course", "parent_id": f"C{index}"},
            {"id": f"E{index}", "kind": "exercise", "parent_id": f"K{index}", "duration_minutes": minutes},
        ]
    return {"nodes": nodes}


CONTRACT = {
    "contract_id": "c1",
    "student_id": "s1",
    "session_id": "sess",
    "center_percentage": 60,
    "company_percentage": 40,
    "weekly_center_hours": 35,
    "weekly_company_hours": 35,
    "start_date": "2024-01-08",
    "end_date": "2024-03-15",
}


class ProgressEndpointsTests(unittest.TestCase):
    def setUp(self):
        self._previous = app.SERVICE
        app.SERVICE = ProgressTrackingService(settings=TrackingSettings())
        status, _, _ = _call("POST", "/content/F1", _nodes())
        self.assertEqual(status, 200)

    def tearDown(self):
        app.SERVICE = self._previous

    def test_completion_then_progress(self):
        status, payload, headers = _call(
            "POST",
            "/events/completion",
            {
                "event_id": "e1",
                "student_id": "s1",
                "leaf_id": "E1",
                "kind": "exercise_submitted",
                "passed": True,
                "timestamp": "2024-01-01T09:00:00Z",
            },
        )
        self.assertEqual(status, 200)
        self.assertEqual(payload["completion_percentage"], 60.0)
        self.assertEqual(headers["x-request-id"], "req-42")

        status, progress, _ = _call("GET", "/progress/s1/F1")
        self.assertEqual(status, 200)
        self.assertEqual(progress["module_progress"], {"M1": 100.0, "M2": 0.0})

    def test_malformed_payloads_are_decode_errors(self):
        status, payload, _ = _call("POST", "/attendance", {"student_id": "s1", "status": "sleeping"})
        self.assertEqual(status, 422)
        self.assertEqual(payload["error"]["type"], "decode_error")

        status, payload, _ = _call("POST", "/attendance", raw=b"{not json")
        self.assertEqual(status, 422)
        self.assertEqual(payload["error"]["type"], "decode_error")

    def test_duplicate_attendance_is_conflict(self):
        record = {
            "student_id": "s1",
            "session_id": "S1",
            "status": "present",
            "recorded_at": "2024-01-02T08:00:00Z",
        }
        self.assertEqual(_call("POST", "/attendance", record)[0], 200)
        status, payload, _ = _call("POST", "/attendance", record)
        self.assertEqual(status, 409)
        self.assertEqual(payload["error"]["type"], "duplicate_attendance")

    def test_unknown_progress_is_not_found(self):
        status, payload, _ = _call("GET", "/progress/ghost/F1")
        self.assertEqual(status, 404)
        self.assertEqual(payload["error"]["type"], "unknown_entity")

    def test_risk_alerts_endpoint(self):
        _call(
            "POST",
            "/enrollments",
            {"student_id": "s1", "formation_id": "F1", "started_at": "2024-01-01T09:00:00Z"},
        )
        status, outcome, _ = _call("POST", "/risk/s1/F1/recompute")
        self.assertEqual(status, 200)
        self.assertIn("stagnation", outcome["factors"])

        status, alerts, _ = _call("GET", "/risk/alerts", query="threshold=0")
        self.assertEqual(status, 200)
        self.assertEqual([a["student_id"] for a in alerts["alerts"]], ["s1"])

    def test_coordination_event(self):
        status, payload, _ = _call(
            "POST",
            "/coordination",
            {
                "type": "company_visit",
                "event_id": "v1",
                "student_id": "s1",
                "occurred_at": "2024-01-05T10:00:00Z",
                "overall_rating": 2,
                "follow_up_required": True,
            },
        )
        self.assertEqual(status, 200)
        self.assertEqual(payload["signal"]["direction"], 1)


class ContractEndpointsTests(unittest.TestCase):
    def setUp(self):
        self._previous = app.SERVICE
        app.SERVICE = ProgressTrackingService(settings=TrackingSettings())

    def tearDown(self):
        app.SERVICE = self._previous

    def test_contract_lifecycle_and_calendar(self):
        status, contract, _ = _call("POST", "/contracts", CONTRACT)
        self.assertEqual(status, 200)
        self.assertEqual(contract["status"], "draft")

        status, generation, _ = _call("POST", "/contracts/c1/validate")
        self.assertEqual(status, 200)
        self.assertEqual(len(generation["weeks"]), 10)
        self.assertEqual(sum(1 for w in generation["weeks"] if w["location"] == "center"), 6)

        status, calendar, _ = _call("GET", "/calendar/s1/c1", query="start=2024-02-01&end=2024-02-14")
        self.assertEqual(status, 200)
        self.assertEqual([w["week"] for w in calendar["weeks"]], [5, 6, 7])

        status, report, _ = _call("GET", "/calendar/s1/conflicts")
        self.assertEqual(status, 200)
        self.assertEqual(report["severity"], "none")

        status, confirmed, _ = _call(
            "POST", "/calendar/s1/confirm", {"contract_id": "c1", "year": 2024, "week": 2, "actor": "tutor"}
        )
        self.assertEqual(status, 200)
        self.assertTrue(confirmed["is_confirmed"])

        self.assertEqual(_call("POST", "/contracts/c1/activate")[0], 200)
        status, amended, _ = _call(
            "POST",
            "/contracts/c1/amend",
            {"actor": "coordinator", "reason": "extension", "as_of": "2024-02-01T00:00:00Z", "end_date": "2024-03-29"},
        )
        self.assertEqual(status, 200)
        self.assertEqual(len(amended["weeks"]), 8)

    def test_invalid_contract_and_bad_transition(self):
        _call("POST", "/contracts", {**CONTRACT, "company_percentage": 50})
        status, payload, _ = _call("POST", "/contracts/c1/validate")
        self.assertEqual(status, 422)
        self.assertEqual(payload["error"]["type"], "invalid_contract")
        self.assertTrue(payload["error"]["fatal"])

        status, payload, _ = _call("POST", "/contracts/c1/activate")
        self.assertEqual(status, 409)
        self.assertEqual(payload["error"]["type"], "invalid_transition")

        status, _, _ = _call("GET", "/calendar/s1/missing")
        self.assertEqual(status, 404)


if __name__ == "__main__":
    unittest.main()
