import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import app


def _prepare_scope(
    method: str,
    path: str,
    *,
    query: Optional[dict] = None,
    body: bytes = b"",
) -> dict:
    raw_headers = [(b"host", b"testserver")]
    if body:
        raw_headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode("ascii")),
            ]
        )
    return {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "scheme": "http",
        "query_string": urlencode(query or {}, doseq=True).encode("utf-8"),
        "headers": raw_headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
) -> tuple[int, dict]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else b""
    scope = _prepare_scope(method, path, query=query, body=body)
    messages: list[dict] = []

    async def receive() -> dict:
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: dict) -> None:
        messages.append(message)

    await app.app(scope, receive, send)
    status_code = 500
    response_body = b""
    for message in messages:
        if message.get("type") == "http.response.start":
            status_code = message.get("status", 500)
        elif message.get("type") == "http.response.body":
            response_body += message.get("body", b"")
    content = response_body.decode("utf-8")
    return status_code, json.loads(content or "{}")


def _request(method: str, path: str, payload: Optional[dict] = None, query: Optional[dict] = None):
    return asyncio.run(_call_app(method, path, payload=payload, query=query))


def _register(student_id: str = "s1", **extra) -> None:
    payload = {"studentId": student_id, "keyStage": "KS2", "subjects": ["maths"], **extra}
    status, body = _request("POST", "/students", payload)
    assert status == 200, body


def _event(student_id: str = "s1", **overrides) -> dict:
    payload = {
        "studentId": student_id,
        "subject": "maths",
        "topic": "fractions",
        "correct": False,
        "responseTimeMs": 18000,
    }
    payload.update(overrides)
    return payload


def test_health(temp_db):
    status, body = _request("GET", "/health")
    assert status == 200
    assert body["status"] == "ok"


def test_register_student_validation(temp_db):
    status, body = _request("POST", "/students", {"studentId": "s1", "keyStage": "KS2", "subjects": ["maths"]})
    assert status == 200
    assert body["subjects"] == ["maths"]

    status, _ = _request("POST", "/students", {"studentId": "s2", "keyStage": "KS7", "subjects": ["maths"]})
    assert status == 422
    status, _ = _request("POST", "/students", {"studentId": "s3", "keyStage": "KS2", "subjects": ["maths"], "attendance": 140})
    assert status == 422


def test_event_ingestion(temp_db):
    _register()
    status, body = _request("POST", "/events", _event())
    assert status == 200
    assert body["accepted"] is True
    assert body["difficulty_level"] == 5
    assert body["pacing"] in {"gradual", "standard", "accelerated"}

    for overrides in ({"responseTimeMs": True}, {"responseTimeMs": "fast"}, {"correct": "yes"}, {"topic": "quadratics"}):
        status, _ = _request("POST", "/events", _event(**overrides))
        assert status == 422, overrides

    status, _ = _request("POST", "/events", _event(student_id="ghost"))
    assert status == 404


def test_risk_and_recommendations(temp_db):
    _register(attendance=50.0)
    for _ in range(6):
        _request("POST", "/events", _event())

    status, body = _request("GET", "/students/s1/risk")
    assert status == 200
    assert body["data"]["tier"] == "high"
    assert body["stale"] is False
    assert body["computed_at"]

    status, body = _request("GET", "/students/s1/gaps")
    assert status == 200
    assert [gap["topic"] for gap in body["data"]] == ["fractions"]

    status, body = _request("GET", "/students/s1/recommendations")
    assert status == 200
    interventions = body["data"]["interventions"]
    assert len(interventions) == 1

    intervention_id = interventions[0]["intervention_id"]
    status, body = _request("PATCH", f"/interventions/{intervention_id}", {"status": "in_progress"})
    assert status == 200
    assert body["status"] == "in_progress"
    status, _ = _request("PATCH", f"/interventions/{intervention_id}", {"status": "proposed"})
    assert status == 422
    status, _ = _request("PATCH", "/interventions/unknown", {"status": "completed"})
    assert status == 404

    status, body = _request("GET", "/students/s1/risk/history")
    assert status == 200
    assert len(body["history"]) == 1
    status, _ = _request("GET", "/students/ghost/risk")
    assert status == 404


def test_predictions_and_forecast(temp_db):
    _register()
    for _ in range(3):
        _request("POST", "/events", _event(correct=True))
    status, body = _request("GET", "/students/s1/predictions")
    assert status == 200
    assert "overall" in body["subjects"]["maths"]

    status, body = _request("GET", "/students/s1/forecast/maths", query={"metric": "accuracy", "periods": 3})
    assert status == 200
    assert [point["period"] for point in body["points"]] == [1, 2, 3]
    status, _ = _request("GET", "/students/s1/forecast/maths", query={"metric": "mood"})
    assert status == 422


def test_difficulty_endpoints(temp_db):
    _register()
    status, body = _request("PUT", "/students/s1/difficulty/maths", {"adaptationSpeed": 5, "level": 7})
    assert status == 200
    assert body["level"] == 7
    assert body["adaptation_speed"] == 5

    status, _ = _request("PUT", "/students/s1/difficulty/maths", {"adaptationSpeed": 9})
    assert status == 422

    _request("POST", "/events", _event())
    status, body = _request("GET", "/students/s1/difficulty/maths")
    assert status == 200
    assert body["level"] == 6

    status, body = _request("GET", "/students/s1/difficulty/maths/adjustments")
    assert status == 200
    assert [item["new_level"] for item in body["adjustments"]] == [6]


def test_cohort_and_recompute(temp_db):
    _register("s1", attendance=50.0)
    _register("s2")
    for _ in range(6):
        _request("POST", "/events", _event())

    status, body = _request("POST", "/cohorts/year5/members", {"studentIds": ["s1", "s2"]})
    assert status == 200
    assert body["student_ids"] == ["s1", "s2"]

    status, body = _request("POST", "/recompute", {"studentIds": ["s1", "s2"]})
    assert status == 200
    assert sorted(body["succeeded"]) == ["s1", "s2"]

    status, body = _request("GET", "/cohorts/year5/risk")
    assert status == 200
    assert body["tiers"] == {"low": 0, "medium": 1, "high": 1}

    status, body = _request("GET", "/cohorts/year5/recommendations")
    assert status == 200
    assert [item["student_ids"] for item in body["interventions"]] == [["s1"]]
