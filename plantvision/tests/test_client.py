from __future__ import annotations

import base64
import json
import sys
import threading
from pathlib import Path

import httpx

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from plantvision.client import (  # noqa: E402
    STATUS_FAILED,
    STATUS_OK,
    STATUS_REJECTED,
    PlantAnalysisClient,
    format_share_text,
)
from plantvision.history_store import HistoryStoreError, LocalHistoryStore  # noqa: E402
from plantvision.plant_analysis import AnalysisResult  # noqa: E402

ENDPOINT = "http://detector.test/functions/v1/plant-disease-detection"

GOOD_PAYLOAD = {
    "disease": "Leaf Blight",
    "confidence": 100,
    "severity": "Medium",
    "symptoms": "Brown lesions with yellow halos.",
    "causes": "Fungal infection.",
    "treatment": "Apply copper-based fungicide.",
    "degraded": True,
}


def _client(responder, **kwargs) -> tuple[PlantAnalysisClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return PlantAnalysisClient(endpoint_url=ENDPOINT, http_client=http_client, **kwargs), seen


class _FailingStore:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def upload_image(self, data, *, filename, content_type):
        self.calls.append("upload_image")
        raise HistoryStoreError("bucket missing")

    def save(self, result, *, image_url, session_id=None):
        self.calls.append("save")
        raise HistoryStoreError("table missing")

    def list_recent(self, limit=10):
        raise HistoryStoreError("offline")

    def delete(self, record_id):
        raise HistoryStoreError("offline")


def test_oversized_image_is_rejected_without_network_call():
    client, seen = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD))

    outcome = client.analyze(b"\0" * (10 * 1024 * 1024 + 1), filename="huge.jpg")

    assert outcome.status == STATUS_REJECTED
    assert outcome.message == "File size must be less than 10MB"
    assert outcome.result is None
    assert seen == []


def test_image_at_the_limit_is_sent():
    client, seen = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD), max_image_bytes=16)

    outcome = client.analyze(b"x" * 16, filename="leaf.jpg")

    assert outcome.status == STATUS_OK
    assert len(seen) == 1


def test_success_sends_single_data_url_request_and_saves_history(tmp_path: Path):
    store = LocalHistoryStore(root=tmp_path)
    client, seen = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD), history_store=store)
    image = b"\xff\xd8\xff fake jpeg" * 1000

    outcome = client.analyze(image, filename="leaf.jpg", session_id="sess-9")

    assert outcome.status == STATUS_OK
    assert outcome.message == "Analysis completed successfully!"
    assert outcome.result.disease == "Leaf Blight"
    assert outcome.result.confidence == 100
    assert outcome.result.degraded is True
    assert len(seen) == 1
    body = json.loads(seen[0].content)
    assert body == {"imageBase64": "data:image/jpeg;base64," + base64.b64encode(image).decode("ascii")}

    records = store.list_recent()
    assert len(records) == 1
    assert records[0].id == outcome.record.id
    assert records[0].session_id == "sess-9"
    assert records[0].image_url.startswith("/api/history/images/")


def test_network_error_returns_sentinel_and_writes_no_history(tmp_path: Path):
    def responder(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network unreachable", request=request)

    store = LocalHistoryStore(root=tmp_path)
    client, _ = _client(responder, history_store=store)

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.status == STATUS_FAILED
    assert outcome.message == "Failed to analyze image. Please try again."
    assert outcome.result.disease == "Analysis Failed"
    assert outcome.result.confidence == 0
    assert outcome.result.severity == "Medium"
    assert outcome.result.treatment
    assert outcome.record is None
    assert store.list_recent() == []


def test_error_status_and_bad_shapes_fall_back_to_sentinel():
    responses = [
        httpx.Response(500, json={"error": "boom", "disease": "Error", "confidence": 0}),
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"disease": "", "confidence": 50}),
        httpx.Response(200, json={"disease": "Rust", "confidence": "high"}),
        httpx.Response(200, json={"error": "No image provided", "disease": "Error", "confidence": 0}),
    ]
    for response in responses:
        client, _ = _client(lambda request, response=response: response)

        outcome = client.analyze(b"jpeg", filename="leaf.jpg")

        assert outcome.status == STATUS_FAILED
        assert outcome.result.disease == "Analysis Failed"


def test_markdown_artifacts_are_stripped_from_fields():
    payload = dict(GOOD_PAYLOAD, disease="**Leaf Blight**", treatment="### Treatment\nApply *copper* spray")
    client, _ = _client(lambda request: httpx.Response(200, json=payload))

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.result.disease == "Leaf Blight"
    assert outcome.result.treatment == "Treatment\nApply copper spray"


def test_persistence_failures_do_not_undo_the_analysis():
    store = _FailingStore()
    client, _ = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD), history_store=store)

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.status == STATUS_OK
    assert outcome.result.disease == "Leaf Blight"
    assert outcome.record is None
    assert store.calls == ["upload_image", "save"]
    assert client.history() == []
    assert client.delete_record("abc") is False


def test_oversized_confidence_from_endpoint_is_clamped():
    body = '{"disease": "Leaf Blight", "confidence": ' + "9" * 400 + ', "severity": "High"}'
    client, _ = _client(
        lambda request: httpx.Response(200, content=body, headers={"Content-Type": "application/json"})
    )

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.status == STATUS_OK
    assert outcome.result.confidence == 100
    assert outcome.result.degraded is True


def test_unwritable_local_store_does_not_undo_the_analysis(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = LocalHistoryStore(root=blocker / "history")
    client, _ = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD), history_store=store)

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.status == STATUS_OK
    assert outcome.result.disease == "Leaf Blight"
    assert outcome.record is None
    assert client.history() == []


def test_corrupt_history_rows_are_skipped(tmp_path: Path):
    store = LocalHistoryStore(root=tmp_path)
    result = AnalysisResult(
        disease="Root Rot",
        confidence=78,
        severity="High",
        symptoms="Wilting",
        causes="Overwatering",
        treatment="Reduce watering.",
    )
    kept = store.save(result, image_url="")
    payload = json.loads(store.history_path.read_text(encoding="utf-8"))
    payload["records"] += [{"id": "1", "confidence": "abc"}, {"disease": "no id"}, "garbage"]
    store.history_path.write_text(json.dumps(payload), encoding="utf-8")
    client, _ = _client(lambda request: httpx.Response(200, json=GOOD_PAYLOAD), history_store=store)

    assert [record.id for record in client.history()] == [kept.id]


def test_parse_fallback_result_is_shown_but_not_saved(tmp_path: Path):
    fallback = {
        "disease": "Analysis Error",
        "confidence": 0,
        "severity": "Medium",
        "symptoms": "Could not analyze the provided image",
        "causes": "Image analysis failed",
        "treatment": "Please try uploading a clearer image of the plant",
        "degraded": True,
    }
    store = LocalHistoryStore(root=tmp_path)
    client, _ = _client(lambda request: httpx.Response(200, json=fallback), history_store=store)

    outcome = client.analyze(b"jpeg", filename="leaf.jpg")

    assert outcome.status == STATUS_OK
    assert outcome.result.disease == "Analysis Error"
    assert store.list_recent() == []


def test_second_analysis_is_rejected_while_one_is_in_flight():
    entered = threading.Event()
    release = threading.Event()

    def responder(request: httpx.Request) -> httpx.Response:
        entered.set()
        release.wait(timeout=5)
        return httpx.Response(200, json=GOOD_PAYLOAD)

    client, seen = _client(responder)
    outcomes = []
    worker = threading.Thread(target=lambda: outcomes.append(client.analyze(b"jpeg", filename="leaf.jpg")))
    worker.start()
    assert entered.wait(timeout=5)

    assert client.busy is True
    second = client.analyze(b"jpeg", filename="leaf.jpg")
    release.set()
    worker.join(timeout=5)

    assert second.status == STATUS_REJECTED
    assert second.message == "An analysis is already in progress"
    assert outcomes[0].status == STATUS_OK
    assert len(seen) == 1
    assert client.busy is False


def test_format_share_text_lists_every_field():
    text = format_share_text(
        AnalysisResult(
            disease="Root Rot",
            confidence=78,
            severity="High",
            symptoms="Wilting",
            causes="Overwatering",
            treatment="Reduce watering. Repot with fresh soil.",
        )
    )

    assert "Disease: Root Rot" in text
    assert "Confidence: 78%" in text
    assert "Severity: High" in text
    assert "Treatment: Reduce watering. Repot with fresh soil." in text
    assert "estimated" not in text
