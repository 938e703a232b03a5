# labs_client.py
import asyncio
import logging
import random
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict

from settings import settings

log = logging.getLogger(__name__)

STATUS_SUCCESSFUL = "MEDIA_GENERATION_STATUS_SUCCESSFUL"
STATUS_FAILED = "MEDIA_GENERATION_STATUS_FAILED"

ASPECT_RATIOS = ("LANDSCAPE", "PORTRAIT")


class LabsError(Exception):
    pass


class AuthenticationError(LabsError):
    """Credential missing or rejected. Fatal for the whole run."""


class ProtocolError(LabsError):
    """A call succeeded but the response is missing fields we rely on."""


class LabsTimeoutError(LabsError):
    pass


# ---- Types ----

class LabsCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    cookie: str = ""
    bearer_token: str = ""

    def token(self) -> str:
        tok = (self.bearer_token or "").strip()
        if tok.startswith("Bearer "):
            tok = tok[len("Bearer "):]
        return tok


class SessionContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    project_id: str
    project_name: str = ""
    credential: LabsCredential


class OperationHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation_name: str
    scene_id: str


class StatusOutcome(str, Enum):
    SUCCESSFUL = "successful"
    FAILED = "failed"
    PROCESSING = "processing"


# ---- HTTP plumbing ----

def _headers(credential: LabsCredential) -> Dict[str, str]:
    site = httpx.URL(settings.labs_base_url)
    base = f"{site.scheme}://{site.host}"
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.labs_user_agent,
        "Origin": base,
        "Referer": f"{base}/",
    }
    token = credential.token()
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if credential.cookie:
        headers["Cookie"] = credential.cookie
    return headers


def open_client(credential: LabsCredential, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """
    Build the AsyncClient every Labs call goes through. The caller owns it
    (use as `async with`).
    """
    return httpx.AsyncClient(
        headers=_headers(credential),
        timeout=httpx.Timeout(settings.request_timeout_sec),
        transport=transport,
    )


async def _request(client: httpx.AsyncClient, method: str, url: str, *, json: Any = None) -> Dict[str, Any]:
    """
    Send one request and normalise every failure into the LabsError family.
    Empty bodies decode as {}.
    """
    try:
        r = await client.request(method, url, json=json)
    except httpx.TimeoutException as e:
        raise LabsTimeoutError(f"request to {url} timed out after {settings.request_timeout_sec:g}s") from e
    except httpx.HTTPError as e:
        raise LabsError(f"request to {url} failed: {e}") from e

    if r.status_code in (401, 403):
        raise AuthenticationError(f"request to {url} was rejected: {r.status_code} {r.text}")
    if r.status_code >= 300:
        log.error("API error response from %s: %s %s", url, r.status_code, r.text)
        raise LabsError(f"request to {url} failed with status {r.status_code}")
    if not r.content:
        return {}
    try:
        data = r.json()
    except ValueError as e:
        raise ProtocolError(f"response from {url} is not JSON: {r.text[:200]}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"response from {url} is not a JSON object: {r.text[:200]}")
    return data


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ---- Credential + session bootstrap ----

async def resolve_credential(auth_token: str, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> LabsCredential:
    """
    Exchange an account token for the active Labs cookie held by the
    cookie server.
    """
    if not settings.cookie_server_url:
        raise AuthenticationError("COOKIE_SERVER_URL not set; pass a credential instead")
    if not auth_token:
        raise AuthenticationError("auth token is empty")

    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_sec), transport=transport) as client:
        try:
            r = await client.get(settings.cookie_server_url, headers={"Authorization": f"Bearer {auth_token}"})
        except httpx.HTTPError as e:
            raise AuthenticationError(f"cookie server unreachable: {e}") from e

    if r.status_code >= 300:
        raise AuthenticationError(f"could not fetch cookie (HTTP {r.status_code}): {r.text}")
    try:
        data = r.json()
    except ValueError as e:
        raise AuthenticationError(f"cookie server returned invalid JSON: {r.text[:200]}") from e

    if not isinstance(data, dict):
        data = {}
    cookie = data.get("cookie")
    if not data.get("success") or not cookie:
        raise AuthenticationError(data.get("message") or "no valid cookie available on the cookie server")
    return LabsCredential(
        name=cookie.get("name") or "default",
        cookie=cookie.get("value") or "",
        bearer_token=cookie.get("bearerToken") or "",
    )


async def create_project(client: httpx.AsyncClient) -> Tuple[str, str]:
    title = f"Veo Project API - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
    payload = {"json": {"projectTitle": title, "toolName": settings.labs_tool_name}}
    data = await _request(client, "POST", f"{settings.labs_base_url}/api/trpc/project.createProject", json=payload)

    result = _dict(_dict(_dict(_dict(data.get("result")).get("data")).get("json")).get("result"))
    project_id = result.get("projectId")
    if not project_id or not isinstance(project_id, str):
        raise ProtocolError(f"could not create project, response: {data}")
    project_name = _dict(result.get("projectInfo")).get("projectTitle") or title
    return project_id, project_name


async def activate_project(client: httpx.AsyncClient, project_id: str) -> None:
    """Best effort: the backend only needs to have seen the project page."""
    url = (
        f"{settings.labs_base_url}/next/data/{settings.labs_next_data_id}"
        f"/flow/project/{project_id}.json?projectId={project_id}"
    )
    try:
        await _request(client, "GET", url)
    except LabsError as e:
        log.warning("could not activate project session %s: %s", project_id, e)


async def bootstrap_session(
    client: httpx.AsyncClient,
    credential: Optional[LabsCredential],
    activation_delay: Optional[float] = None,
) -> SessionContext:
    """
    Create and activate a fresh project for this run. Every failure is
    raised as AuthenticationError: nothing downstream can work without it.
    """
    if credential is None:
        raise AuthenticationError("no credential supplied")
    if not credential.token():
        raise AuthenticationError("bearer token is required for the generation API")

    try:
        project_id, project_name = await create_project(client)
    except AuthenticationError:
        raise
    except LabsError as e:
        raise AuthenticationError(f"session creation failed: {e}") from e

    log.info("created project %s (%s)", project_id, project_name)
    await activate_project(client, project_id)

    delay = settings.activation_delay_sec if activation_delay is None else activation_delay
    if delay > 0:
        await asyncio.sleep(delay)
    return SessionContext(project_id=project_id, project_name=project_name, credential=credential)


# ---- Generation ----

def resolve_model(model: Optional[str], aspect_ratio: str) -> Tuple[str, str]:
    """
    Returns (model key, wire aspect-ratio token). Portrait output only works
    with the portrait model, so it overrides whatever the caller picked.
    """
    ratio = (aspect_ratio or "LANDSCAPE").upper()
    if ratio not in ASPECT_RATIOS:
        raise ValueError(f"unsupported aspect ratio: {aspect_ratio}")
    model_key = model or settings.labs_default_model
    if ratio == "PORTRAIT":
        model_key = settings.labs_portrait_model
    return model_key, f"VIDEO_ASPECT_RATIO_{ratio}"


async def generate_video(
    client: httpx.AsyncClient,
    session: SessionContext,
    prompt: str,
    scene_id: str,
    model_key: str,
    aspect_token: str,
) -> OperationHandle:
    """
    Start one text->video generation. Returns the handle the status call needs.
    """
    payload = {
        "clientContext": {
            "projectId": session.project_id,
            "tool": settings.labs_tool_name,
        },
        "requests": [{
            "aspectRatio": aspect_token,
            "seed": random.randint(0, 99999),
            "textInput": {"prompt": prompt},
            "videoModelKey": model_key,
            "metadata": {"sceneId": scene_id},
        }],
    }
    data = await _request(client, "POST", f"{settings.labs_sandbox_api_base}/video:batchAsyncGenerateVideoText", json=payload)

    operations = data.get("operations")
    operation = _dict(operations[0]) if isinstance(operations, list) and operations else {}
    name = _dict(operation.get("operation")).get("name")
    returned_scene = operation.get("sceneId")
    if not isinstance(name, str) or not isinstance(returned_scene, str) or not name or not returned_scene:
        raise ProtocolError(f"no operation name / scene id in response: {data}")
    return OperationHandle(operation_name=name, scene_id=returned_scene)


async def check_video_status(client: httpx.AsyncClient, handle: OperationHandle) -> Dict[str, Any]:
    payload = {
        "operations": [[{"operation": {"name": handle.operation_name}, "sceneId": handle.scene_id}]],
    }
    data = await _request(client, "POST", f"{settings.labs_sandbox_api_base}/video:batchCheckAsyncVideoGenerationStatus", json=payload)
    operations = data.get("operations")
    if not isinstance(operations, list) or not operations or not isinstance(operations[0], dict):
        raise ProtocolError(f"no operation in status response: {data}")
    return operations[0]


def classify_status(status: Optional[str]) -> StatusOutcome:
    if status == STATUS_SUCCESSFUL:
        return StatusOutcome.SUCCESSFUL
    if status == STATUS_FAILED:
        return StatusOutcome.FAILED
    return StatusOutcome.PROCESSING


def extract_video_url(result: Dict[str, Any]) -> str:
    video = _dict(_dict(_dict(result.get("operation")).get("metadata")).get("video"))
    url = video.get("fifeUrl") or video.get("servingBaseUri")
    if not url or not isinstance(url, str):
        raise ProtocolError("generation reported success but no video URL in output")
    return url


def extract_failure_reason(result: Dict[str, Any]) -> str:
    error = result.get("error")
    if isinstance(error, str) and error:
        return error
    message = _dict(error).get("message")
    return message if isinstance(message, str) and message else "Unknown error"


def status_label(status: Any) -> str:
    if not isinstance(status, str) or not status:
        return "unknown"
    return status.replace("MEDIA_GENERATION_STATUS_", "").lower()
