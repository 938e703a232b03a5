# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for Labs bulk video automation:
#  - POST /automation/start  -> start a run (fire-and-forget, results via events)
#  - POST /automation/stop   -> raise the stop flag (cooperative)
#  - GET  /automation        -> snapshot of the current run
#  - GET  /automation/events -> Server-Sent Events stream of progress events
#  - GET  /jobs/{id}         -> latest state of one job
#  - GET  /videos            -> history of generated videos
#  - POST /downloads         -> fetch a finished video to disk (and R2 if enabled)
#  Persistence:
#    * SQLModel + SQLite (labs_automation.db) for the video history
# ------------------------------------------------------------------------------------

import asyncio
import json
import logging
from typing import Dict, List, Literal, Optional, Set

from fastapi import FastAPI, BackgroundTasks, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

import history
import log_setup
from automation import AutomationBusy, AutomationController
from events import EventQueue, EventStatus, ProgressEvent
from labs_client import LabsCredential
from settings import AutomationLimits, settings
from storage import DownloadError, download_artifact

log_setup.configure()
log = logging.getLogger("main")

controller = AutomationController()

# run_id -> {"auto_save": bool, "save_path": str|None}
_run_options: Dict[str, dict] = {}
_save_tasks: Set[asyncio.Task] = set()

# ------------- FastAPI app --------------
app = FastAPI(title="Labs Automation API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _on_startup():
    history.init_db()


# ---------- Schemas ----------
class PromptIn(BaseModel):
    id: Optional[str] = None
    text: str = Field(..., min_length=1)


class CredentialIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = "default"
    cookie: str = Field("", alias="value", description="Raw Cookie header for labs.google")
    bearer_token: str = Field("", alias="bearerToken")


class StartAutomationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    prompts: List[PromptIn] = Field(..., min_length=1)
    credential: Optional[CredentialIn] = None
    auth_token: Optional[str] = Field(None, alias="authToken", description="Account token for the cookie server")
    model: Optional[str] = None
    aspect_ratio: Literal["LANDSCAPE", "PORTRAIT"] = Field("LANDSCAPE", alias="aspectRatio")
    auto_save: bool = Field(False, alias="autoSave")
    save_path: Optional[str] = Field(None, alias="savePath")
    max_concurrent_sessions: Optional[int] = Field(None, alias="maxConcurrentSessions")
    max_retries: Optional[int] = Field(None, alias="maxRetries")


class StartAutomationResponse(BaseModel):
    run_id: str
    status: str
    job_ids: List[str]


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    destination_hint: Optional[str] = Field(None, alias="destinationHint")
    prompt_text: str = Field("", alias="promptText")
    prompt_index: Optional[int] = Field(None, alias="promptIndex")


# ---------- Progress fan-out: history + auto-save ----------
async def _auto_save(run_id: str, job_id: str, url: str, prompt_text: str, index: int, save_path: Optional[str]):
    try:
        result = await download_artifact(url, save_path, prompt_text=prompt_text, prompt_index=index)
    except DownloadError as e:
        log.error("auto-save of %s failed: %s", job_id, e)
        return
    if result.path:
        history.attach_local_path(run_id, job_id, result.path)


def _on_progress(event: ProgressEvent):
    ctx = controller.current
    if ctx is None or event.job_id is None or event.job_id not in ctx.jobs:
        return
    job = ctx.jobs[event.job_id]
    history.record_event(ctx.run_id, job.prompt_text, event)

    opts = _run_options.get(ctx.run_id) or {}
    if opts.get("auto_save") and event.status == EventStatus.SUCCESS and event.artifact_url:
        task = asyncio.get_running_loop().create_task(
            _auto_save(ctx.run_id, job.id, event.artifact_url, job.prompt_text, job.index, opts.get("save_path"))
        )
        _save_tasks.add(task)
        task.add_done_callback(_save_tasks.discard)


controller.emitter.subscribe(_on_progress)


async def _run_and_release(ctx, **kwargs):
    try:
        await controller.run(ctx, **kwargs)
    finally:
        _run_options.pop(ctx.run_id, None)


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "running": controller.is_running, "storage": settings.storage}


# ---------- Automation ----------
@app.post("/automation/start", response_model=StartAutomationResponse)
async def start_automation(payload: StartAutomationRequest, background: BackgroundTasks):
    try:
        limits = AutomationLimits.from_settings(
            max_concurrent_sessions=payload.max_concurrent_sessions,
            max_retries=payload.max_retries,
        )
        ctx = controller.prepare([p.model_dump() for p in payload.prompts], limits)
    except AutomationBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    _run_options[ctx.run_id] = {"auto_save": payload.auto_save, "save_path": payload.save_path}
    credential = None
    if payload.credential:
        credential = LabsCredential(
            name=payload.credential.name,
            cookie=payload.credential.cookie,
            bearer_token=payload.credential.bearer_token,
        )

    # 🔴 The run itself happens after the response is sent
    background.add_task(
        _run_and_release,
        ctx,
        credential=credential,
        auth_token=payload.auth_token,
        model=payload.model,
        aspect_ratio=payload.aspect_ratio,
    )
    return StartAutomationResponse(run_id=ctx.run_id, status="started", job_ids=list(ctx.jobs))


@app.post("/automation/stop")
def stop_automation():
    controller.stop_automation()
    return {"ok": True, "running": controller.is_running}


@app.get("/automation")
def automation_state():
    if controller.current is None:
        return {"running": False, "run": None}
    return {"running": controller.is_running, "run": controller.current.snapshot()}


def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


@app.get("/automation/events")
async def automation_events():
    q = EventQueue()
    unsubscribe = controller.emitter.subscribe(q)

    async def stream():
        try:
            yield _sse_event({"type": "heartbeat"})
            while True:
                event = await q.get(timeout=25)
                if event is None:
                    yield _sse_event({"type": "heartbeat"})
                    continue
                yield _sse_event(event.wire())
                # the run-level completion event ends the stream
                if event.job_id is None:
                    break
        finally:
            unsubscribe()

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------- Jobs / history ----------
@app.get("/jobs/{job_id}")
def get_job(job_id: str):
    ctx = controller.current
    if ctx is not None and job_id in ctx.jobs:
        return ctx.jobs[job_id].to_dict()
    rec = history.get_video(job_id)
    if not rec:
        raise HTTPException(status_code=404, detail="job not found")
    return rec.model_dump(mode="json")


@app.get("/videos")
def videos(limit: int = 100):
    return [rec.model_dump(mode="json") for rec in history.list_videos(limit)]


# ---------- Downloads ----------
@app.post("/downloads")
async def download(payload: DownloadRequest):
    try:
        result = await download_artifact(
            payload.url,
            payload.destination_hint,
            prompt_text=payload.prompt_text,
            prompt_index=payload.prompt_index,
        )
    except DownloadError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.model_dump()


# ---------- Index ----------
@app.get("/")
def index():
    return {"service": "labs-automation-api", "storage": settings.storage}
