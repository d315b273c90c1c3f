from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple
from uuid import uuid4

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..core.events import Event
from ..core.logging_setup import get_runtime_log_paths
from ..db import StoreError
from ..models import NODE_STATUSES, Settings
from ..runtime import Runtime
from ..services.clash_api import ClashAPI, ClashAPIError

router = APIRouter(prefix="/api")

_SSE_POLL = 1.0


def _rt(request: Request) -> Runtime:
    return request.app.state.runtime


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def _tail_text(path: str, lines: int, max_bytes: int = 2 * 1024 * 1024) -> Tuple[str, bool, str]:
    p = Path(str(path or "").strip())
    try:
        size = int(p.stat().st_size or 0)
    except FileNotFoundError:
        return "", False, "not_found"
    except OSError as exc:
        return "", False, str(exc)
    read_bytes = min(int(max_bytes), size)
    truncated = size > read_bytes
    try:
        with p.open("rb") as f:
            if truncated:
                f.seek(size - read_bytes)
            data = f.read(read_bytes)
    except OSError as exc:
        return "", truncated, str(exc)
    rows = data.splitlines()
    if len(rows) > lines:
        rows = rows[-lines:]
        truncated = True
    return b"\n".join(rows).decode("utf-8", errors="replace"), truncated, ""


# ==================== verification ====================

@router.post("/verify")
async def api_verify(request: Request, wait: bool = Query(False)):
    rt = _rt(request)
    tags: Optional[List[str]] = None
    body = await request.body()
    if body:
        try:
            payload = json.loads(body)
        except ValueError:
            return _error("invalid JSON body")
        raw = payload.get("tags") if isinstance(payload, dict) else None
        if isinstance(raw, list):
            tags = [str(t) for t in raw if str(t).strip()] or None

    if not wait:
        if not rt.verify_in_background(tags):
            return _error("verification already running", 409)
        return {"ok": True, "status": "started"}

    try:
        log = await asyncio.to_thread(rt.verify_now, tags)
    except ValueError as exc:
        return _error(str(exc))
    if log is None:
        return _error("verification already running", 409)
    if log.error:
        return JSONResponse({"ok": False, "error": log.error, "log": asdict(log)}, status_code=502)
    return {"ok": True, "log": asdict(log)}


@router.get("/verify/status")
async def api_verify_status(request: Request):
    rt = _rt(request)
    sch = rt.scheduler
    last = rt.engine.last_log
    return {
        "ok": True,
        "running": rt.engine.is_running(),
        "scheduler_running": sch.is_running(),
        "next_verify_at": sch.next_verify_time(),
        "last_verify_at": sch.last_verify_time(),
        "verify_interval_sec": sch.verify_interval(),
        "last_log": asdict(last) if last is not None else None,
    }


@router.get("/verify/logs")
async def api_verify_logs(request: Request, limit: int = Query(20, ge=1, le=500)):
    logs = _rt(request).store.get_verification_logs(limit)
    return {"ok": True, "logs": [asdict(x) for x in logs]}


# ==================== nodes ====================

@router.get("/nodes")
async def api_nodes(request: Request, status: str = Query("")):
    st = status.strip().lower()
    if st and st not in NODE_STATUSES:
        return _error(f"unknown status: {status}")
    nodes = _rt(request).store.get_nodes(st or None)
    return {"ok": True, "nodes": [n.to_dict() for n in nodes]}


@router.get("/nodes/counts")
async def api_node_counts(request: Request):
    return {"ok": True, "counts": _rt(request).store.get_node_counts()}


@router.post("/nodes/{node_id}/unarchive")
async def api_node_unarchive(request: Request, node_id: int):
    try:
        _rt(request).store.unarchive_node(node_id)
    except StoreError as exc:
        return _error(str(exc), 404)
    return {"ok": True}


@router.get("/nodes/unsupported")
async def api_unsupported(request: Request):
    return {"ok": True, "nodes": _rt(request).store.list_unsupported_nodes()}


# ==================== settings / scheduler ====================

@router.get("/settings")
async def api_settings(request: Request):
    return {"ok": True, "settings": asdict(_rt(request).store.get_settings())}


@router.put("/settings")
async def api_settings_update(request: Request):
    rt = _rt(request)
    try:
        payload = await request.json()
    except ValueError:
        return _error("invalid JSON body")
    if not isinstance(payload, dict):
        return _error("expected an object")
    known = set(Settings.__dataclass_fields__.keys())
    unknown = sorted(k for k in payload if k not in known)
    if unknown:
        return _error("unknown settings: " + ", ".join(unknown))
    try:
        settings = rt.store.update_settings(**payload)
    except StoreError as exc:
        return _error(str(exc))
    # intervals are read at start
    status = await asyncio.to_thread(rt.scheduler.restart)
    return {"ok": True, "settings": asdict(settings), "scheduler": status.value}


@router.get("/scheduler")
async def api_scheduler(request: Request):
    sch = _rt(request).scheduler
    return {
        "ok": True,
        "running": sch.is_running(),
        "message": sch.describe(),
        "interval_sec": sch.interval(),
        "verify_interval_sec": sch.verify_interval(),
        "next_update_at": sch.next_update_time(),
        "next_verify_at": sch.next_verify_time(),
        "last_verify_at": sch.last_verify_time(),
    }


@router.post("/scheduler/restart")
async def api_scheduler_restart(request: Request):
    sch = _rt(request).scheduler
    status = await asyncio.to_thread(sch.restart)
    return {"ok": True, "status": status.value, "message": sch.describe()}


# ==================== probe ====================

@router.get("/probe")
async def api_probe(request: Request):
    return {"ok": True, "probe": _rt(request).probe.status().to_dict()}


@router.get("/probe/connections")
async def api_probe_connections(request: Request):
    status = _rt(request).probe.status()
    if not status.running:
        return _error("probe not running", 409)
    try:
        data = await asyncio.to_thread(ClashAPI(status.port).connections)
    except ClashAPIError as exc:
        return _error(exc.message, 502)
    return {"ok": True, **data}


@router.put("/probe/mode")
async def api_probe_mode(request: Request):
    status = _rt(request).probe.status()
    if not status.running:
        return _error("probe not running", 409)
    try:
        payload = await request.json()
    except ValueError:
        return _error("invalid JSON body")
    mode = str((payload or {}).get("mode") or "").strip().lower() if isinstance(payload, dict) else ""
    if mode not in ("rule", "global", "direct"):
        return _error("mode must be rule, global or direct")
    api = ClashAPI(status.port)
    try:
        await asyncio.to_thread(api.set_mode, mode)
        current = await asyncio.to_thread(api.get_mode)
    except ClashAPIError as exc:
        return _error(exc.message, 502)
    return {"ok": True, "mode": current}


@router.post("/probe/stop")
async def api_probe_stop(request: Request):
    await asyncio.to_thread(_rt(request).probe.stop)
    return {"ok": True}


# ==================== pipeline ====================

@router.post("/pipeline/run")
async def api_pipeline_run(request: Request):
    changed = await asyncio.to_thread(_rt(request).pipeline.run_all)
    return {"ok": True, "changed": changed}


@router.get("/pipeline/logs")
async def api_pipeline_logs(
    request: Request, subscription_id: str = Query(""), limit: int = Query(20, ge=1, le=500)
):
    logs = _rt(request).store.get_pipeline_logs(subscription_id.strip(), limit)
    return {"ok": True, "logs": [asdict(x) for x in logs]}


# ==================== logs / events ====================

@router.get("/logs/tail")
async def api_logs_tail(request: Request, source: str = Query("nodeguard"), lines: int = Query(300, ge=20, le=2000)):
    paths = get_runtime_log_paths(_rt(request).data_dir)
    key = source.strip().lower()
    path = paths.get(key)
    if not path:
        return _error("unknown log source")
    text, truncated, read_error = _tail_text(path, int(lines))
    return {
        "ok": True,
        "source": key,
        "path": path,
        "exists": read_error != "not_found",
        "truncated": truncated,
        "read_error": read_error,
        "text": text,
    }


def _sse(ev: Event) -> str:
    return f"event: {ev.type}\ndata: {ev.to_json()}\n\n"


@router.get("/events")
async def api_events(request: Request):
    bus = _rt(request).bus
    sub = bus.subscribe(f"sse-{uuid4().hex}")

    async def _stream() -> AsyncIterator[str]:
        try:
            yield ": connected\n\n"
            while not sub.closed:
                if await request.is_disconnected():
                    break
                ev = await asyncio.to_thread(sub.get, _SSE_POLL)
                if ev is None:
                    yield ": ping\n\n"
                    continue
                yield _sse(ev)
        finally:
            bus.unsubscribe(sub.id)

    headers: Dict[str, str] = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(_stream(), media_type="text/event-stream", headers=headers)
