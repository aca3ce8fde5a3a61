from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel

from .config import AppConfig
from .history_store import (
    HistoryRecordNotFoundError,
    HistoryStoreError,
    LocalHistoryStore,
    build_history_store,
)
from .plant_analysis import PlantAnalysisService
from .vision_providers import VisionProviderError, build_default_providers, build_provider

logger = logging.getLogger(__name__)

ANALYSIS_ROUTE = "/functions/v1/plant-disease-detection"
ANALYSIS_ROUTE_ALIAS = "/api/plant-disease-detection"
CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
}
MAX_HISTORY_LIMIT = 100


class AnalysisRequestBody(BaseModel):
    imageBase64: Any = None


def create_app(
    config: AppConfig | None = None,
    *,
    analysis_service: PlantAnalysisService | None = None,
    history_store: Any = None,
) -> FastAPI:
    config = config or AppConfig.from_env()

    if analysis_service is None:
        try:
            provider = build_provider(config)
        except VisionProviderError as exc:
            raise RuntimeError(f"Vision provider setup failed during startup: {exc}") from exc
        analysis_service = PlantAnalysisService(provider=provider)

    if history_store is None and config.history_enabled:
        try:
            history_store = build_history_store(config)
        except HistoryStoreError as exc:
            logger.error("History disabled: %s", exc)
            history_store = None

    app = FastAPI(title="Plant Vision Detection Service", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=CORS_ALLOW_HEADERS,
    )
    app.state.config = config
    app.state.analysis_service = analysis_service
    app.state.history_store = history_store

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.options(ANALYSIS_ROUTE)
    @app.options(ANALYSIS_ROUTE_ALIAS)
    async def analysis_preflight():
        return Response(status_code=200, headers=CORS_HEADERS)

    @app.post(ANALYSIS_ROUTE)
    @app.post(ANALYSIS_ROUTE_ALIAS)
    async def detect_plant_disease(request: Request):
        try:
            raw_payload = await request.json()
        except ValueError:
            raw_payload = None
        body = AnalysisRequestBody(**raw_payload) if isinstance(raw_payload, dict) else AnalysisRequestBody()

        outcome = await run_in_threadpool(analysis_service.analyze_image, body.imageBase64)
        return JSONResponse(status_code=outcome.status_code, content=outcome.payload, headers=CORS_HEADERS)

    @app.get("/api/vision/providers")
    async def list_vision_providers():
        providers = build_default_providers(config)
        return {
            "providers": [provider.availability() for provider in providers.values()],
            "default_provider": config.vision_provider,
        }

    @app.get("/api/history")
    async def list_history(limit: int = Query(default=config.history_limit)):
        if history_store is None:
            return []
        limit = max(1, min(MAX_HISTORY_LIMIT, limit))
        try:
            records = await run_in_threadpool(history_store.list_recent, limit)
        except HistoryStoreError as exc:
            logger.error("Error fetching detection history: %s", exc)
            return []
        return [record.to_dict() for record in records]

    @app.delete("/api/history/{record_id}")
    async def delete_history_record(record_id: str):
        if history_store is None:
            raise HTTPException(status_code=404, detail="History is disabled")
        try:
            await run_in_threadpool(history_store.delete, record_id)
        except HistoryRecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except HistoryStoreError as exc:
            logger.error("Error deleting detection %s: %s", record_id, exc)
            raise HTTPException(status_code=502, detail=str(exc))
        return {"deleted": record_id}

    @app.get("/api/history/images/{name}")
    async def get_history_image(name: str):
        if not isinstance(history_store, LocalHistoryStore):
            raise HTTPException(status_code=404, detail="Image not found")
        path = history_store.get_image_path(name)
        if path is None:
            raise HTTPException(status_code=404, detail="Image not found")
        return FileResponse(path)

    return app


def run() -> None:
    import uvicorn

    load_dotenv()
    config = AppConfig.from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        create_app(config),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


load_dotenv()
app = create_app()


if __name__ == "__main__":
    run()
