from __future__ import annotations

import sys
from pathlib import Path

from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from plantvision.config import AppConfig  # noqa: E402
from plantvision.history_store import LocalHistoryStore  # noqa: E402
from plantvision.main import ANALYSIS_ROUTE, ANALYSIS_ROUTE_ALIAS, create_app  # noqa: E402
from plantvision.plant_analysis import AnalysisResult, PlantAnalysisService  # noqa: E402
from plantvision.vision_providers import VisionProviderResult  # noqa: E402


class _FakeProvider:
    label = "Gemini"

    def __init__(self, *, configured: bool = True, response_text: str = "{}") -> None:
        self.configured = configured
        self.response_text = response_text
        self.calls = 0

    def analyze(self, *, prompt: str, image_base64: str, media_type: str = "image/jpeg") -> VisionProviderResult:
        self.calls += 1
        return VisionProviderResult(
            text=self.response_text,
            raw_response={},
            model_used="fake",
            request_metadata={},
        )


def _app(tmp_path: Path, provider: _FakeProvider) -> tuple[TestClient, LocalHistoryStore]:
    store = LocalHistoryStore(root=tmp_path)
    app = create_app(
        AppConfig(local_data_dir=tmp_path),
        analysis_service=PlantAnalysisService(provider=provider),
        history_store=store,
    )
    return TestClient(app), store


def test_analysis_endpoint_returns_normalized_payload(tmp_path: Path):
    provider = _FakeProvider(
        response_text='Diagnosis: {"disease": "Leaf Blight", "confidence": 130, "severity": "unknown", '
        '"symptoms": "Lesions", "causes": "Fungus", "treatment": "Fungicide"}'
    )
    client, _ = _app(tmp_path, provider)

    response = client.post(ANALYSIS_ROUTE, json={"imageBase64": "data:image/jpeg;base64,AAAA"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["disease"] == "Leaf Blight"
    assert payload["confidence"] == 100
    assert payload["severity"] == "Medium"
    assert payload["degraded"] is True
    assert response.headers["access-control-allow-origin"] == "*"
    assert provider.calls == 1


def test_analysis_endpoint_alias_is_wired(tmp_path: Path):
    provider = _FakeProvider(response_text="no json here")
    client, _ = _app(tmp_path, provider)

    response = client.post(ANALYSIS_ROUTE_ALIAS, json={"imageBase64": "AAAA"})

    assert response.status_code == 200
    assert response.json()["disease"] == "Analysis Error"


def test_missing_credential_is_a_server_error(tmp_path: Path):
    provider = _FakeProvider(configured=False)
    client, _ = _app(tmp_path, provider)

    response = client.post(ANALYSIS_ROUTE, json={"imageBase64": "AAAA"})

    assert response.status_code == 500
    payload = response.json()
    assert payload["disease"] == "Error"
    assert payload["confidence"] == 0
    assert payload["severity"] == "Medium"
    assert "error" in payload
    assert provider.calls == 0


def test_malformed_body_is_treated_as_missing_image(tmp_path: Path):
    provider = _FakeProvider()
    client, _ = _app(tmp_path, provider)

    response = client.post(
        ANALYSIS_ROUTE,
        content=b"{not-json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["error"] == "No image provided"
    assert provider.calls == 0


def test_options_preflight_answers_empty_ok(tmp_path: Path):
    client, _ = _app(tmp_path, _FakeProvider())

    plain = client.options(ANALYSIS_ROUTE)
    assert plain.status_code == 200
    assert plain.content == b""
    assert plain.headers["access-control-allow-origin"] == "*"
    assert "x-client-info" in plain.headers["access-control-allow-headers"]

    preflight = client.options(
        ANALYSIS_ROUTE,
        headers={
            "Origin": "https://plants.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, apikey, content-type",
        },
    )
    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"


def test_history_endpoints_list_and_delete(tmp_path: Path):
    client, store = _app(tmp_path, _FakeProvider())
    result = AnalysisResult(
        disease="Aphid Infestation",
        confidence=88,
        severity="Medium",
        symptoms="Curled leaves",
        causes="Aphids",
        treatment="Use insecticidal soap or neem oil spray.",
    )
    image_url = store.upload_image(b"png-bytes", filename="leaf.png", content_type="image/png")
    first = store.save(result, image_url=image_url)
    second = store.save(result, image_url=image_url)

    listing = client.get("/api/history", params={"limit": 1})
    assert listing.status_code == 200
    assert [row["id"] for row in listing.json()] == [second.id]

    image = client.get(image_url)
    assert image.status_code == 200
    assert image.content == b"png-bytes"

    deleted = client.delete(f"/api/history/{first.id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"deleted": first.id}

    missing = client.delete(f"/api/history/{first.id}")
    assert missing.status_code == 404

    remaining = client.get("/api/history").json()
    assert [row["id"] for row in remaining] == [second.id]


def test_history_store_failure_returns_empty_list(tmp_path: Path):
    client, store = _app(tmp_path, _FakeProvider())
    store.root.mkdir(parents=True, exist_ok=True)
    store.history_path.write_text("{corrupt", encoding="utf-8")

    response = client.get("/api/history")

    assert response.status_code == 200
    assert response.json() == []


def test_providers_listing_and_health(tmp_path: Path):
    client, _ = _app(tmp_path, _FakeProvider())

    assert client.get("/health").json() == {"status": "ok"}
    payload = client.get("/api/vision/providers").json()
    assert payload["default_provider"] == "gemini"
    assert {entry["id"] for entry in payload["providers"]} == {"gemini", "openai"}


def test_analysis_routes_are_declared_in_main():
    source = (REPO_ROOT / "plantvision" / "main.py").read_text(encoding="utf-8")

    assert "@app.post(ANALYSIS_ROUTE)" in source
    assert "@app.options(ANALYSIS_ROUTE)" in source
    assert '@app.delete("/api/history/{record_id}")' in source
