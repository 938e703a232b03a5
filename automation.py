# automation.py
# ------------------------------------------------------------------------------------
#  Bulk generation pipeline against the Labs backend:
#    bootstrap session -> submission loop + poll loop (concurrent) -> terminal events
#  The two loops share one AutomationRunContext (queue + in-flight map).
#  Failures go back to the head of the queue until the retry budget runs out.
# ------------------------------------------------------------------------------------

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Iterable, Mapping, Optional, Union

import httpx

from events import EventStatus, ProgressEmitter
from labs_client import (
    AuthenticationError,
    LabsCredential,
    LabsError,
    SessionContext,
    StatusOutcome,
    bootstrap_session,
    check_video_status,
    classify_status,
    extract_failure_reason,
    extract_video_url,
    generate_video,
    open_client,
    resolve_credential,
    resolve_model,
    status_label,
)
from run_context import AutomationRunContext, CancellationFlag, Job, derive_job_id
from settings import AutomationLimits

log = logging.getLogger(__name__)

PromptInput = Union[str, Mapping[str, Any]]

COMPLETION_MESSAGE = "All prompts have been processed!"


class AutomationBusy(Exception):
    pass


def new_scene_id() -> str:
    return f"client-generated-uuid-{uuid.uuid4()}"


def build_jobs(prompts: Iterable[PromptInput]):
    jobs = []
    for index, p in enumerate(prompts):
        if isinstance(p, str):
            job_id, text = None, p
        else:
            job_id, text = p.get("id"), p.get("text")
        text = (text or "").strip()
        if not text:
            raise ValueError(f"prompt #{index + 1} is empty")
        jobs.append(Job(job_id or derive_job_id(text, index), text, index))
    return jobs


def build_run_context(
    prompts: Iterable[PromptInput],
    limits: Optional[AutomationLimits] = None,
    stop_flag: Optional[CancellationFlag] = None,
) -> AutomationRunContext:
    jobs = build_jobs(prompts)
    if not jobs:
        raise ValueError("no prompts to process")
    return AutomationRunContext(jobs, limits or AutomationLimits.from_settings(), stop_flag)


# ---------- Retry / failure coordinator ----------

def handle_failure(ctx: AutomationRunContext, emitter: ProgressEmitter, job: Job, reason: str):
    max_retries = ctx.limits.max_retries
    if job.retry_count < max_retries:
        attempt = ctx.requeue_for_retry(job)
        emitter.emit(job.id, f"Error: {reason}. Retrying {attempt}/{max_retries}...", EventStatus.RETRYING)
    else:
        ctx.fail(job, reason)
        emitter.emit(job.id, f"Failed after {max_retries} retries: {reason}", EventStatus.ERROR)


# ---------- Submission manager ----------

async def submit_loop(
    ctx: AutomationRunContext,
    client: httpx.AsyncClient,
    session: SessionContext,
    emitter: ProgressEmitter,
    model_key: str,
    aspect_token: str,
):
    """
    Feed queued jobs to the backend while in-flight capacity allows.
    Keeps running while jobs are in flight, since a failed poll can put a
    job back on the queue.
    """
    while not ctx.is_drained() and not ctx.should_stop():
        job = ctx.take_next()
        if job is None:
            await asyncio.sleep(ctx.limits.submit_interval_sec)
            continue

        emitter.emit(job.id, "Submitting prompt...", EventStatus.SUBMITTING)
        try:
            handle = await generate_video(client, session, job.prompt_text, new_scene_id(), model_key, aspect_token)
        except AuthenticationError as e:
            ctx.abort(str(e))
            break
        except LabsError as e:
            handle_failure(ctx, emitter, job, str(e))
            continue

        ctx.mark_processing(job, handle)
        emitter.emit(job.id, "Operation accepted, generating...", EventStatus.PROCESSING, handle=handle)


# ---------- Status poll manager ----------

def _timed_out(job: Job, limits: AutomationLimits) -> bool:
    return job.processing_since is not None and time.monotonic() - job.processing_since > limits.generation_timeout_sec


async def _poll_job(ctx: AutomationRunContext, client: httpx.AsyncClient, emitter: ProgressEmitter, job: Job):
    handle = job.handle
    result = await check_video_status(client, handle)
    status = result.get("status")
    outcome = classify_status(status)
    emitter.emit(job.id, f"Status: {status_label(status)}", EventStatus.PROCESSING, handle=handle)

    if outcome is StatusOutcome.SUCCESSFUL:
        url = extract_video_url(result)
        ctx.complete(job, url)
        emitter.emit(job.id, "Video complete!", EventStatus.SUCCESS, artifact_url=url, handle=handle)
    elif outcome is StatusOutcome.FAILED:
        handle_failure(ctx, emitter, job, extract_failure_reason(result))


async def poll_loop(ctx: AutomationRunContext, client: httpx.AsyncClient, emitter: ProgressEmitter):
    while not ctx.is_drained() and not ctx.should_stop():
        for job in ctx.processing_jobs():
            if _timed_out(job, ctx.limits):
                handle_failure(ctx, emitter, job, f"generation timed out after {ctx.limits.generation_timeout_sec:g}s")
                continue
            try:
                await _poll_job(ctx, client, emitter, job)
            except AuthenticationError as e:
                ctx.abort(str(e))
                break
            except LabsError as e:
                handle_failure(ctx, emitter, job, str(e))

        if not ctx.is_drained() and not ctx.should_stop():
            await asyncio.sleep(ctx.limits.poll_interval_sec)

    if not ctx.should_stop():
        emitter.emit(None, COMPLETION_MESSAGE, EventStatus.SUCCESS)


async def _guard(ctx: AutomationRunContext, loop: Awaitable[None], name: str):
    try:
        await loop
    except Exception as e:
        log.exception("%s loop crashed", name)
        ctx.abort(f"unexpected error in {name} loop: {e}")


# ---------- Run entry points ----------

async def execute_run(
    ctx: AutomationRunContext,
    *,
    credential: Optional[LabsCredential] = None,
    auth_token: Optional[str] = None,
    model: Optional[str] = None,
    aspect_ratio: str = "LANDSCAPE",
    emitter: Optional[ProgressEmitter] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    activation_delay: Optional[float] = None,
) -> AutomationRunContext:
    """
    Bootstrap the session and run both loops until the work is drained,
    the stop flag is raised, or a fatal error aborts the run. On a fatal
    error every job still pending is reported as failed.
    """
    emitter = emitter or ProgressEmitter()
    model_key, aspect_token = resolve_model(model, aspect_ratio)

    try:
        if credential is None and auth_token:
            log.info("resolving credential from cookie server")
            credential = await resolve_credential(auth_token, transport=transport)
        if credential is None:
            raise AuthenticationError("no credential supplied")

        async with open_client(credential, transport=transport) as client:
            session = await bootstrap_session(client, credential, activation_delay)
            log.info(
                "run %s: %d prompts, project %s, model %s, %s",
                ctx.run_id, len(ctx.jobs), session.project_id, model_key, aspect_token,
            )
            await asyncio.gather(
                _guard(ctx, submit_loop(ctx, client, session, emitter, model_key, aspect_token), "submission"),
                _guard(ctx, poll_loop(ctx, client, emitter), "poll"),
            )
    except AuthenticationError as e:
        ctx.abort(str(e))
    except Exception as e:
        log.exception("run %s crashed during session bootstrap", ctx.run_id)
        ctx.abort(f"unexpected error during session bootstrap: {e}")

    if ctx.fatal_reason is not None:
        for job in ctx.fail_pending(ctx.fatal_reason):
            emitter.emit(job.id, f"Fatal error: {ctx.fatal_reason}", EventStatus.ERROR)
    elif ctx.stop_flag.is_set():
        log.info("run %s stopped; %d jobs left unfinished", ctx.run_id, len(ctx.queued_ids()) + ctx.in_flight_count())
    return ctx


async def run_automation(prompts: Iterable[PromptInput], *, limits: Optional[AutomationLimits] = None, stop_flag: Optional[CancellationFlag] = None, **kwargs) -> AutomationRunContext:
    ctx = build_run_context(prompts, limits, stop_flag)
    return await execute_run(ctx, **kwargs)


class AutomationController:
    """
    Inbound surface for callers: one run at a time, a shared stop flag,
    and a shared emitter callers subscribe to.
    """

    def __init__(self, emitter: Optional[ProgressEmitter] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.emitter = emitter or ProgressEmitter()
        self.stop_flag = CancellationFlag()
        self.transport = transport
        self.current: Optional[AutomationRunContext] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def prepare(self, prompts: Iterable[PromptInput], limits: Optional[AutomationLimits] = None) -> AutomationRunContext:
        if self._running:
            raise AutomationBusy("an automation run is already in progress")
        ctx = build_run_context(prompts, limits, self.stop_flag)
        self.stop_flag.clear()
        self.current = ctx
        self._running = True
        return ctx

    async def run(self, ctx: AutomationRunContext, **kwargs) -> AutomationRunContext:
        kwargs.setdefault("transport", self.transport)
        try:
            return await execute_run(ctx, emitter=self.emitter, **kwargs)
        finally:
            self._running = False

    async def start_automation(self, prompts: Iterable[PromptInput], *, limits: Optional[AutomationLimits] = None, **kwargs) -> AutomationRunContext:
        ctx = self.prepare(prompts, limits)
        return await self.run(ctx, **kwargs)

    def stop_automation(self):
        self.stop_flag.set()
