"""FastAPI operations server for Governor.

Build an app with ``create_app(registry)``. The module-level ``app`` has no
registry of its own and loads one from ``GOVERNOR_HANDLERS``
("package.module:registry") when the cron route runs; without either, task
processing answers 503 and leaves the queue untouched.
"""

from __future__ import annotations

import os
from typing import Optional, Dict, Any

from fastapi import APIRouter, FastAPI, HTTPException, Header, Depends, Query, Request
from pydantic import BaseModel, Field

from governor import (
    AdmissionController,
    HandlerRegistry,
    SQLiteStorage,
    StoreError,
    Surface,
    TaskExecutor,
    TaskQueue,
    UsageRecorder,
    __version__,
    load_registry,
)
from governor.config import get_db_path, get_store_timeout


def _get_api_key() -> Optional[str]:
    return os.getenv("GOVERNOR_API_KEY")


def _get_cron_secret() -> Optional[str]:
    return os.getenv("GOVERNOR_CRON_SECRET")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = _get_cron_secret()
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _storage() -> SQLiteStorage:
    return SQLiteStorage(db_path=get_db_path(), timeout=get_store_timeout())


def _registry(request: Request) -> HandlerRegistry:
    registry = request.app.state.registry
    if registry is not None:
        return registry

    target = os.getenv("GOVERNOR_HANDLERS")
    if not target:
        raise HTTPException(status_code=503, detail="No task handlers configured")
    try:
        return load_registry(target)
    except (ValueError, ImportError) as exc:
        raise HTTPException(status_code=503, detail=f"Cannot load task handlers: {exc}") from exc


router = APIRouter()


class AdmissionRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    ip: str = "0.0.0.0"
    endpoint: str = Field(..., min_length=1)
    tier: Optional[str] = None
    surface: Surface = Surface.WEB


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/cron/process-tasks", dependencies=[Depends(_require_cron_secret)])
def process_tasks(
    max_count: int = Query(5, ge=1, le=100),
    registry: HandlerRegistry = Depends(_registry),
) -> Dict[str, Any]:
    queue = TaskQueue(_storage())
    executor = TaskExecutor(queue, registry)
    try:
        processed = executor.process_batch(max_count=max_count)
        stats = queue.stats()
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {
        "success": True,
        "processed": processed,
        "stats": stats.to_dict(),
    }


@router.get("/tasks/stats", dependencies=[Depends(_require_api_key)])
def task_stats(workspace_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        stats = TaskQueue(_storage()).stats(workspace_id=workspace_id)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {**stats.to_dict(), "total": stats.total}


@router.get("/usage/{identity}", dependencies=[Depends(_require_api_key)])
def usage(identity: str, tier: Optional[str] = None) -> Dict[str, Any]:
    storage = _storage()
    recorder = UsageRecorder(storage)
    try:
        budget = AdmissionController(storage).check_token_limit(identity, tier)
        tokens = recorder.token_usage_breakdown(identity)
        endpoints = recorder.usage_stats(identity)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {
        "identity": identity,
        "tokens": tokens,
        "budget": {
            "allowed": budget.allowed,
            "tokens_used": budget.tokens_used,
            "token_limit": budget.token_limit,
            "remaining": budget.remaining,
            "percentage": budget.percentage,
            "reset_at": budget.reset_at.isoformat(),
        },
        "endpoints": endpoints,
    }


@router.post("/admission/check", dependencies=[Depends(_require_api_key)])
def admission_check(req: AdmissionRequest) -> Dict[str, Any]:
    controller = AdmissionController(_storage())
    try:
        decision = controller.check(
            identity=req.identity,
            ip=req.ip,
            endpoint=req.endpoint,
            tier=req.tier,
            surface=req.surface,
        )
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return decision.to_dict()


def create_app(registry: Optional[HandlerRegistry] = None) -> FastAPI:
    """Build the operations app around the given task handler registry."""
    app = FastAPI(title="Governor API", version=__version__)
    app.state.registry = registry
    app.include_router(router)
    return app


app = create_app()
