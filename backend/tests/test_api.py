import pytest
from fastapi.testclient import TestClient

from recommender.main import create_app

RANK_BODY = {
    "scenario": "task->model",
    "task": {"category": "beauty", "language": "en", "productId": "p-1"},
    "context": {"region": "us", "channel": "tiktok"},
    "constraints": {"maxCostUSD": 0.05},
    "options": {"explore": False},
}


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as c:
        yield c


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Recommendation Decision Service"

    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["store"] == "memory"
    assert body["circuitBreakers"] == {"total": 0, "open": []}


def test_rank_returns_camel_case_contract(client):
    r = client.post("/recommend/rank", json=RANK_BODY)
    assert r.status_code == 200
    body = r.json()

    assert body["decisionId"]
    assert body["candidateSetId"]
    assert body["mode"] == "exploit"
    assert body["fallbackUsed"] is False
    assert body["chosen"]["targetId"] == body["topK"][0]["targetId"]
    assert body["chosen"]["bucket"] == "top1"
    assert set(body["alternatives"]) == {"fineTop2", "coarseExtras", "outOfPool"}
    assert "totalMs" in body["timings"]


def test_rank_errors_use_the_error_envelope(client):
    r = client.post("/recommend/rank", json={**RANK_BODY, "scenario": "task->nothing"})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "RANK_BAD_REQUEST"
    assert "task->model" in body["error"]["details"]["supported"]

    r = client.get("/metrics")
    assert r.json()["errors"]["by_label"] == {"RANK_BAD_REQUEST": 1}


def test_rank_schema_violation_is_422(client):
    r = client.post("/recommend/rank", json={"task": {}})
    assert r.status_code == 422


def test_feedback_flow(client):
    decision_id = client.post("/recommend/rank", json=RANK_BODY).json()["decisionId"]

    r = client.post("/recommend/feedback", json={
        "decisionId": decision_id,
        "qualityScore": 0.85,
        "addedSellingPoints": 2,
        "addedPainPoints": 2,
        "rerunCount": 0,
    })
    assert r.status_code == 200
    body = r.json()
    assert body["implicitSignal"] == "implicit_positive"
    assert body["outcome"]["qualityScore"] == 0.85
    assert body["events"][0]["eventType"] == "implicit_positive"

    r = client.post("/recommend/feedback", json={"decisionId": "missing", "qualityScore": 0.5})
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "FBK_DECISION_NOT_FOUND"


def test_execution_reports_drive_breakers(client):
    for _ in range(5):
        r = client.post("/executions/report", json={"key": "openai", "success": False})
    assert r.json() == {"key": "openai", "state": "open"}

    assert client.get("/health").json()["status"] == "degraded"
    assert client.get("/admin/circuit-breakers").json()["openai"]["state"] == "open"

    r = client.post("/admin/circuit-breakers/openai/reset")
    assert r.json()["state"] == "closed"

    client.post("/executions/report", json={"key": "gemini/gemini-1.5-flash", "success": False})
    r = client.post("/admin/circuit-breakers/gemini/gemini-1.5-flash/reset")
    assert r.json() == {"status": "ok", "key": "gemini/gemini-1.5-flash", "state": "closed"}

    r = client.post("/admin/circuit-breakers/clear")
    assert r.json() == {"status": "ok", "cleared": 2}


def test_admin_metrics_json_csv_and_segments(client):
    client.post("/recommend/rank", json=RANK_BODY)

    snapshot = client.get("/admin/metrics").json()
    assert snapshot["totalDecisions"] == 1

    r = client.get("/admin/metrics", params={"format": "csv"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert r.text.splitlines()[0].startswith("segment,totalDecisions")

    r = client.get("/admin/metrics/segments", params={"by": "category"})
    assert r.json()["segments"]["beauty"]["totalDecisions"] == 1

    r = client.get("/admin/metrics/segments", params={"by": "planet"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "ADM_BAD_REQUEST"

    assert client.get("/admin/metrics", params={"format": "xml"}).status_code == 422


def test_admin_alerts_stats_and_cache_clear(client):
    client.post("/recommend/rank", json=RANK_BODY)

    assert client.get("/admin/alerts").json() == {"alerting": False, "lastAlert": None}

    stats = client.get("/admin/decision-stats", params={"hours": 24}).json()
    assert stats["totalDecisions"] == 1

    r = client.post("/admin/caches/clear")
    assert r.json()["cleared"]["candidatePools"] == 1


def test_admin_settings(client):
    r = client.get("/admin/settings")
    assert [s["scenario"] for s in r.json()][:2] == ["task->model", "task->prompt"]

    r = client.put("/admin/settings/product->style", json={"epsilon": 0.15, "mCoarse": 6})
    assert r.status_code == 200
    assert r.json()["epsilon"] == 0.15
    assert r.json()["mCoarse"] == 6

    assert client.get("/admin/settings/product->style").json()["mCoarse"] == 6

    r = client.put("/admin/settings/product->style", json={"qualityFloorRej": 0.99})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "SET_BAD_REQUEST"

    assert client.put("/admin/settings/product->style", json={"epsilon": 2}).status_code == 422
