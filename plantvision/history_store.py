from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .config import AppConfig
from .plant_analysis import AnalysisResult

logger = logging.getLogger(__name__)

LOCAL_IMAGE_ROUTE = "/api/history/images"


class HistoryStoreError(RuntimeError):
    pass


class HistoryRecordNotFoundError(HistoryStoreError):
    pass


@dataclass
class HistoryRecord:
    id: str
    created_at: str
    image_url: str
    disease: str
    confidence: int
    severity: str
    symptoms: str
    causes: str
    treatment: str
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "image_url": self.image_url,
            "disease": self.disease,
            "confidence": self.confidence,
            "severity": self.severity,
            "symptoms": self.symptoms,
            "causes": self.causes,
            "treatment": self.treatment,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            id=str(payload["id"]),
            created_at=str(payload.get("created_at") or ""),
            image_url=str(payload.get("image_url") or ""),
            disease=str(payload.get("disease") or ""),
            confidence=int(payload.get("confidence") or 0),
            severity=str(payload.get("severity") or "Medium"),
            symptoms=str(payload.get("symptoms") or ""),
            causes=str(payload.get("causes") or ""),
            treatment=str(payload.get("treatment") or ""),
            session_id=payload.get("session_id"),
        )


def build_history_row(
    result: AnalysisResult,
    *,
    image_url: str,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "image_url": image_url,
        "disease": result.disease,
        "confidence": result.confidence,
        "severity": result.severity,
        "symptoms": result.symptoms,
        "causes": result.causes,
        "treatment": result.treatment,
    }
    if session_id:
        row["session_id"] = session_id
    return row


def build_image_path(filename: str) -> str:
    """Unique object path under detections/, keeping the upload's extension."""
    extension = Path(filename or "").suffix.lstrip(".").lower()
    extension = re.sub(r"[^a-z0-9]", "", extension) or "jpg"
    stamp = int(time.time() * 1000)
    return f"detections/{stamp}-{uuid4().hex[:10]}.{extension}"


def _records_from_rows(rows: List[Any]) -> List[HistoryRecord]:
    records: List[HistoryRecord] = []
    for row in rows:
        if not isinstance(row, dict):
            logger.warning("Skipping non-object history row: %r", row)
            continue
        try:
            records.append(HistoryRecord.from_dict(row))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed history row %r: %s", row.get("id"), exc)
    return records


class SupabaseHistoryStore:
    """
    History records in a Supabase table, images in a public storage bucket.
    """

    def __init__(self, client: Any, *, table: str, bucket: str, project_url: str = "") -> None:
        self.client = client
        self.table = table
        self.bucket = bucket
        self.project_url = project_url.rstrip("/")

    @classmethod
    def from_config(cls, config: AppConfig) -> "SupabaseHistoryStore":
        if not config.supabase_configured:
            raise HistoryStoreError(
                "Missing SUPABASE_URL and/or SUPABASE_SERVICE_ROLE_KEY/SUPABASE_ANON_KEY env vars"
            )
        from supabase import create_client

        return cls(
            create_client(config.supabase_url, config.supabase_key),
            table=config.history_table,
            bucket=config.image_bucket,
            project_url=config.supabase_url,
        )

    def save(
        self,
        result: AnalysisResult,
        *,
        image_url: str,
        session_id: Optional[str] = None,
    ) -> HistoryRecord:
        row = build_history_row(result, image_url=image_url, session_id=session_id)
        try:
            response = self.client.table(self.table).insert(row).execute()
        except Exception as exc:
            raise HistoryStoreError(f"Failed to save detection result: {exc}") from exc
        rows = getattr(response, "data", None)
        if not isinstance(rows, list) or not rows:
            raise HistoryStoreError("Supabase insert returned no rows.")
        saved = _records_from_rows(rows[:1])
        if not saved:
            raise HistoryStoreError("Supabase insert returned a malformed row.")
        return saved[0]

    def list_recent(self, limit: int = 10) -> List[HistoryRecord]:
        try:
            response = (
                self.client.table(self.table)
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as exc:
            raise HistoryStoreError(f"Failed to fetch detection history: {exc}") from exc
        rows = getattr(response, "data", None) or []
        return _records_from_rows(rows)

    def delete(self, record_id: str) -> None:
        try:
            response = self.client.table(self.table).delete().eq("id", record_id).execute()
        except Exception as exc:
            raise HistoryStoreError(f"Failed to delete detection {record_id}: {exc}") from exc
        if not getattr(response, "data", None):
            raise HistoryRecordNotFoundError(f"Detection {record_id} not found.")

    def upload_image(self, data: bytes, *, filename: str, content_type: str) -> str:
        path = build_image_path(filename)
        bucket = self.client.storage.from_(self.bucket)
        try:
            # storage3 sends file options as headers, so upsert must be a string.
            bucket.upload(path, data, {"content-type": content_type, "upsert": "false"})
        except Exception as exc:
            raise HistoryStoreError(f"Failed to upload image: {exc}") from exc
        return self._public_url(path)

    def _public_url(self, path: str) -> str:
        try:
            public = self.client.storage.from_(self.bucket).get_public_url(path)
        except Exception as exc:
            logger.debug("get_public_url failed for %s: %s", path, exc)
            public = None
        if isinstance(public, str) and public:
            return public
        # Older SDKs return {"data": {"publicUrl": ...}}.
        if isinstance(public, dict):
            data = public.get("data")
            if isinstance(data, dict):
                url = data.get("publicUrl") or data.get("public_url")
                if url:
                    return str(url)
        if self.project_url:
            return f"{self.project_url}/storage/v1/object/public/{self.bucket}/{path}"
        raise HistoryStoreError(f"Could not resolve a public URL for {path}.")


class LocalHistoryStore:
    """
    File-backed history for local development: one JSON file plus an images folder.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.images_dir = root / "images"
        self.history_path = root / "history.json"
        self._lock = threading.Lock()

    def _ensure_store(self) -> None:
        try:
            self.images_dir.mkdir(parents=True, exist_ok=True)
            if not self.history_path.exists():
                self.history_path.write_text(json.dumps({"records": []}, indent=2), encoding="utf-8")
        except OSError as exc:
            raise HistoryStoreError(f"Failed to prepare history store at {self.root}: {exc}") from exc

    def _read_records(self) -> List[Dict[str, Any]]:
        self._ensure_store()
        try:
            payload = json.loads(self.history_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise HistoryStoreError(f"Failed to read detection history: {exc}") from exc
        records = payload.get("records") if isinstance(payload, dict) else None
        return records if isinstance(records, list) else []

    def _write_records(self, records: List[Dict[str, Any]]) -> None:
        self._ensure_store()
        try:
            self.history_path.write_text(json.dumps({"records": records}, indent=2), encoding="utf-8")
        except OSError as exc:
            raise HistoryStoreError(f"Failed to write detection history: {exc}") from exc

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def save(
        self,
        result: AnalysisResult,
        *,
        image_url: str,
        session_id: Optional[str] = None,
    ) -> HistoryRecord:
        row = build_history_row(result, image_url=image_url, session_id=session_id)
        row["id"] = uuid4().hex
        row["created_at"] = self._now_iso()
        with self._lock:
            records = self._read_records()
            records.append(row)
            self._write_records(records)
        return HistoryRecord.from_dict(row)

    def list_recent(self, limit: int = 10) -> List[HistoryRecord]:
        with self._lock:
            records = _records_from_rows(self._read_records())
        # Insertion order breaks timestamp ties.
        ordered = sorted(enumerate(records), key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [record for _, record in ordered[:limit]]

    def delete(self, record_id: str) -> None:
        with self._lock:
            records = self._read_records()
            remaining = [
                row for row in records
                if not (isinstance(row, dict) and str(row.get("id")) == record_id)
            ]
            if len(remaining) == len(records):
                raise HistoryRecordNotFoundError(f"Detection {record_id} not found.")
            self._write_records(remaining)

    def upload_image(self, data: bytes, *, filename: str, content_type: str) -> str:
        name = Path(build_image_path(filename)).name
        self._ensure_store()
        try:
            (self.images_dir / name).write_bytes(data)
        except OSError as exc:
            raise HistoryStoreError(f"Failed to upload image: {exc}") from exc
        return f"{LOCAL_IMAGE_ROUTE}/{name}"

    def get_image_path(self, name: str) -> Optional[Path]:
        if Path(name).name != name:
            return None
        path = self.images_dir / name
        return path if path.is_file() else None


def build_history_store(config: AppConfig) -> Any:
    if config.history_backend in ("supabase", "supabase_storage"):
        return SupabaseHistoryStore.from_config(config)
    return LocalHistoryStore(root=config.local_data_dir / "history")
