from __future__ import annotations

import base64
import logging
import mimetypes
import threading
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import DEFAULT_MAX_IMAGE_BYTES, AppConfig
from .history_store import HistoryRecord, HistoryStoreError
from .plant_analysis import (
    DEFAULT_MEDIA_TYPE,
    DEFAULT_SEVERITY,
    ERROR_LABEL,
    PARSE_ERROR_LABEL,
    TEXT_FIELDS,
    AnalysisParseError,
    AnalysisResult,
    normalize_analysis_payload,
    strip_markdown_artifacts,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_URL = "http://127.0.0.1:8000/functions/v1/plant-disease-detection"

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_REJECTED = "rejected"

MESSAGE_SUCCESS = "Analysis completed successfully!"
MESSAGE_FAILED = "Failed to analyze image. Please try again."
MESSAGE_BUSY = "An analysis is already in progress"
MESSAGE_EMPTY = "Please select an image to analyze"

# Labels the server uses for its own failure payloads; never persisted.
UNSAVED_LABELS = {ERROR_LABEL, PARSE_ERROR_LABEL}


def build_failure_sentinel() -> AnalysisResult:
    return AnalysisResult(
        disease="Analysis Failed",
        confidence=0,
        severity=DEFAULT_SEVERITY,
        symptoms="We could not analyze this image. Check your connection and try again.",
        causes="The analysis service was unreachable or returned an unexpected response.",
        treatment="Retake the photo in good light with the affected leaves in focus, then try again.",
        degraded=True,
    )


@dataclass
class ClientOutcome:
    status: str
    message: str
    result: Optional[AnalysisResult] = None
    record: Optional[HistoryRecord] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


class PlantAnalysisClient:
    """
    Browser-side half of the analysis path: validates and encodes an image,
    calls the analysis endpoint once and never lets a failure escape.
    """

    def __init__(
        self,
        *,
        endpoint_url: str = DEFAULT_ENDPOINT_URL,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        http_client: httpx.Client | None = None,
        history_store: Any = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.max_image_bytes = max_image_bytes
        self.http_client = http_client or httpx.Client(timeout=timeout_seconds)
        self.history_store = history_store
        self.headers = dict(headers or {})
        self._in_flight = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        endpoint_url: str = DEFAULT_ENDPOINT_URL,
        http_client: httpx.Client | None = None,
        history_store: Any = None,
    ) -> "PlantAnalysisClient":
        return cls(
            endpoint_url=endpoint_url,
            max_image_bytes=config.max_image_bytes,
            http_client=http_client,
            history_store=history_store if config.history_enabled else None,
            timeout_seconds=config.request_timeout_seconds,
        )

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    def analyze(
        self,
        image: bytes,
        *,
        filename: str = "plant.jpg",
        media_type: str | None = None,
        session_id: str | None = None,
    ) -> ClientOutcome:
        if not image:
            return ClientOutcome(status=STATUS_REJECTED, message=MESSAGE_EMPTY)
        if len(image) > self.max_image_bytes:
            limit_mb = self.max_image_bytes // (1024 * 1024)
            return ClientOutcome(
                status=STATUS_REJECTED,
                message=f"File size must be less than {limit_mb}MB",
            )
        if not self._in_flight.acquire(blocking=False):
            return ClientOutcome(status=STATUS_REJECTED, message=MESSAGE_BUSY)

        try:
            content_type = media_type or _guess_media_type(filename)
            result = self._request_analysis(encode_data_url(image, content_type))
            if result is None:
                return ClientOutcome(
                    status=STATUS_FAILED,
                    message=MESSAGE_FAILED,
                    result=build_failure_sentinel(),
                )

            record = None
            if result.disease not in UNSAVED_LABELS:
                record = self._save_history(
                    result,
                    image=image,
                    filename=filename,
                    content_type=content_type,
                    session_id=session_id,
                )
            return ClientOutcome(
                status=STATUS_OK,
                message=MESSAGE_SUCCESS,
                result=result,
                record=record,
            )
        finally:
            self._in_flight.release()

    def history(self, limit: int = 10) -> list[HistoryRecord]:
        if self.history_store is None:
            return []
        try:
            return self.history_store.list_recent(limit)
        except HistoryStoreError as exc:
            logger.error("Error fetching detection history: %s", exc)
            return []

    def delete_record(self, record_id: str) -> bool:
        if self.history_store is None:
            return False
        try:
            self.history_store.delete(record_id)
        except HistoryStoreError as exc:
            logger.error("Error deleting detection %s: %s", record_id, exc)
            return False
        return True

    def close(self) -> None:
        self.http_client.close()

    def _request_analysis(self, data_url: str) -> AnalysisResult | None:
        try:
            response = self.http_client.post(
                self.endpoint_url,
                json={"imageBase64": data_url},
                headers=self.headers,
            )
        except httpx.HTTPError as exc:
            logger.error("Detection request failed: %s", exc)
            return None

        if not response.is_success:
            logger.error("Detection endpoint returned %s: %s", response.status_code, response.text[:300])
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Detection endpoint returned invalid JSON: %s", exc)
            return None
        if not isinstance(payload, dict):
            logger.error("Detection endpoint returned %s instead of an object", type(payload).__name__)
            return None
        if payload.get("error"):
            logger.error("Detection endpoint reported an error: %s", payload["error"])
            return None

        try:
            return parse_analysis_response(payload)
        except AnalysisParseError as exc:
            logger.error("Detection response failed validation: %s", exc)
            return None

    def _save_history(
        self,
        result: AnalysisResult,
        *,
        image: bytes,
        filename: str,
        content_type: str,
        session_id: str | None,
    ) -> HistoryRecord | None:
        if self.history_store is None:
            return None
        try:
            image_url = self.history_store.upload_image(image, filename=filename, content_type=content_type)
        except HistoryStoreError as exc:
            logger.error("Error uploading image: %s", exc)
            image_url = ""
        try:
            return self.history_store.save(result, image_url=image_url, session_id=session_id)
        except HistoryStoreError as exc:
            logger.error("Error saving detection result: %s", exc)
            return None


def parse_analysis_response(payload: dict[str, Any]) -> AnalysisResult:
    cleaned = dict(payload)
    for field_name in ("disease",) + TEXT_FIELDS:
        cleaned[field_name] = strip_markdown_artifacts(cleaned.get(field_name))
    result = normalize_analysis_payload(cleaned)
    if payload.get("degraded") is True:
        result.degraded = True
    return result


def encode_data_url(image: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(image).decode('ascii')}"


def format_share_text(result: AnalysisResult) -> str:
    lines = [
        "Plant Vision Pro - Analysis Report",
        "",
        f"Disease: {result.disease}",
        f"Confidence: {result.confidence}%",
        f"Severity: {result.severity}",
        "",
        f"Symptoms: {result.symptoms}",
        f"Causes: {result.causes}",
        f"Treatment: {result.treatment}",
    ]
    if result.degraded:
        lines.extend(["", "Note: some details were estimated and may be incomplete."])
    return "\n".join(lines)


def _guess_media_type(filename: str) -> str:
    guessed_type, _ = mimetypes.guess_type(filename or "")
    if isinstance(guessed_type, str) and guessed_type.startswith("image/"):
        return guessed_type
    return DEFAULT_MEDIA_TYPE
