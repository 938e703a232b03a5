from __future__ import annotations

import json

import httpx
import pytest

import labs_client
from labs_client import (
    AuthenticationError,
    LabsCredential,
    LabsError,
    LabsTimeoutError,
    OperationHandle,
    ProtocolError,
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
from settings import settings


def _client(handler, credential=None):
    credential = credential or LabsCredential(cookie="SID=1", bearer_token="tok")
    return open_client(credential, transport=httpx.MockTransport(handler))


# ---- model / ratio ----

def test_resolve_model_portrait_override():
    assert resolve_model("veo_3_0_t2v_fast_ultra", "PORTRAIT") == (settings.labs_portrait_model, "VIDEO_ASPECT_RATIO_PORTRAIT")


def test_resolve_model_landscape_and_default():
    assert resolve_model("veo_3_0_t2v", "landscape") == ("veo_3_0_t2v", "VIDEO_ASPECT_RATIO_LANDSCAPE")
    assert resolve_model(None, "LANDSCAPE")[0] == settings.labs_default_model


def test_resolve_model_rejects_unknown_ratio():
    with pytest.raises(ValueError):
        resolve_model("m", "SQUARE")


# ---- status parsing ----

def test_classify_status():
    assert classify_status("MEDIA_GENERATION_STATUS_SUCCESSFUL") is StatusOutcome.SUCCESSFUL
    assert classify_status("MEDIA_GENERATION_STATUS_FAILED") is StatusOutcome.FAILED
    assert classify_status("MEDIA_GENERATION_STATUS_PENDING") is StatusOutcome.PROCESSING
    assert classify_status(None) is StatusOutcome.PROCESSING
    assert status_label("MEDIA_GENERATION_STATUS_ACTIVE") == "active"
    assert status_label(None) == "unknown"
    assert status_label(3) == "unknown"


def test_extract_video_url_prefers_fife_url():
    result = {"operation": {"metadata": {"video": {"fifeUrl": "https://a", "servingBaseUri": "https://b"}}}}
    assert extract_video_url(result) == "https://a"


def test_extract_video_url_falls_back_and_raises():
    assert extract_video_url({"operation": {"metadata": {"video": {"servingBaseUri": "https://b"}}}}) == "https://b"
    with pytest.raises(ProtocolError):
        extract_video_url({"operation": {"metadata": {}}})
    with pytest.raises(ProtocolError):
        extract_video_url({"operation": "operations/1"})


def test_extract_failure_reason():
    assert extract_failure_reason({"error": {"message": "quota exceeded"}}) == "quota exceeded"
    assert extract_failure_reason({}) == "Unknown error"
    assert extract_failure_reason({"error": "quota exceeded"}) == "quota exceeded"
    assert extract_failure_reason({"error": ["x"]}) == "Unknown error"


# ---- gateway ----

@pytest.mark.anyio
async def test_headers_carry_cookie_and_normalised_bearer():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json={"operations": [{"status": "x"}]})

    credential = LabsCredential(cookie="SID=abc", bearer_token="Bearer ya29.tok")
    async with _client(handler, credential) as client:
        await check_video_status(client, OperationHandle(operation_name="op", scene_id="s"))

    assert seen["authorization"] == "Bearer ya29.tok"
    assert seen["cookie"] == "SID=abc"
    assert seen["origin"] == "https://labs.google"
    assert seen["content-type"] == "application/json"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response, error",
    [
        (httpx.Response(401, text="no"), AuthenticationError),
        (httpx.Response(403, text="no"), AuthenticationError),
        (httpx.Response(500, text="oops"), LabsError),
        (httpx.Response(200, text="<html>"), ProtocolError),
        (httpx.Response(200, json=[{"operations": []}]), ProtocolError),
    ],
)
async def test_request_error_mapping(response, error):
    async with _client(lambda request: response) as client:
        with pytest.raises(error):
            await labs_client._request(client, "POST", "https://aisandbox-pa.googleapis.com/v1/x", json={})


@pytest.mark.anyio
async def test_request_timeout_is_a_labs_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        with pytest.raises(LabsTimeoutError):
            await labs_client._request(client, "GET", "https://labs.google/fx/x")


@pytest.mark.anyio
async def test_empty_body_is_empty_dict():
    async with _client(lambda request: httpx.Response(200)) as client:
        assert await labs_client._request(client, "GET", "https://labs.google/fx/x") == {}


@pytest.mark.anyio
async def test_status_check_payload_and_missing_operation():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"operations": []})

    async with _client(handler) as client:
        with pytest.raises(ProtocolError):
            await check_video_status(client, OperationHandle(operation_name="operations/9", scene_id="scene-9"))

    assert bodies[0] == {"operations": [[{"operation": {"name": "operations/9"}, "sceneId": "scene-9"}]]}


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"operations": [None]},
        {"operations": "operations/1"},
        {"operations": [{"operation": "operations/1", "sceneId": "scene-1"}]},
        {"operations": [{"operation": {"name": 7}, "sceneId": "scene-1"}]},
    ],
)
async def test_generate_rejects_malformed_operations(body):
    session = SessionContext(project_id="proj-1", credential=LabsCredential(bearer_token="tok"))
    async with _client(lambda request: httpx.Response(200, json=body)) as client:
        with pytest.raises(ProtocolError):
            await generate_video(client, session, "a cat", "scene-1", "veo", "VIDEO_ASPECT_RATIO_LANDSCAPE")


# ---- bootstrap ----

@pytest.mark.anyio
async def test_bootstrap_session(fake_labs, transport, credential):
    async with open_client(credential, transport=transport) as client:
        session = await bootstrap_session(client, credential)

    assert session.project_id == "proj-123"
    assert session.project_name == "Test project"
    create = json.loads(fake_labs.requests[0].content)
    assert create["json"]["toolName"] == "PINHOLE"
    assert create["json"]["projectTitle"].startswith("Veo Project API - ")
    activation = fake_labs.requests[1]
    assert activation.method == "GET"
    assert activation.url.params["projectId"] == "proj-123"


@pytest.mark.anyio
async def test_bootstrap_requires_bearer(transport):
    credential = LabsCredential(cookie="SID=1", bearer_token="")
    async with open_client(credential, transport=transport) as client:
        with pytest.raises(AuthenticationError):
            await bootstrap_session(client, credential)


@pytest.mark.anyio
async def test_bootstrap_wraps_server_errors(fake_labs, transport, credential):
    fake_labs.project_status = 500
    async with open_client(credential, transport=transport) as client:
        with pytest.raises(AuthenticationError, match="session creation failed"):
            await bootstrap_session(client, credential)


@pytest.mark.anyio
async def test_bootstrap_rejects_response_without_project_id(credential):
    def handler(request):
        return httpx.Response(200, json={"result": {"data": {"json": {"result": {}}}}})

    async with _client(handler, credential) as client:
        with pytest.raises(AuthenticationError):
            await bootstrap_session(client, credential)


@pytest.mark.anyio
@pytest.mark.parametrize("body", [[], {"result": "ok"}, {"result": {"data": {"json": {"result": {"projectId": 5}}}}}])
async def test_bootstrap_rejects_wrongly_shaped_project(credential, body):
    async with _client(lambda request: httpx.Response(200, json=body), credential) as client:
        with pytest.raises(AuthenticationError, match="session creation failed"):
            await bootstrap_session(client, credential)


# ---- cookie server ----

@pytest.mark.anyio
async def test_resolve_credential(monkeypatch):
    monkeypatch.setattr(settings, "cookie_server_url", "https://cookies.example.com/get_active_cookie.php")
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["authorization"]
        cookie = {"name": "acct-1", "value": "SID=zz", "bearerToken": "ya29.b"}
        return httpx.Response(200, json={"success": True, "cookie": cookie})

    credential = await resolve_credential("acct-token", transport=httpx.MockTransport(handler))

    assert seen["auth"] == "Bearer acct-token"
    assert credential == LabsCredential(name="acct-1", cookie="SID=zz", bearer_token="ya29.b")


@pytest.mark.anyio
async def test_resolve_credential_failure_message(monkeypatch):
    monkeypatch.setattr(settings, "cookie_server_url", "https://cookies.example.com/get")

    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "account expired"})

    with pytest.raises(AuthenticationError, match="account expired"):
        await resolve_credential("t", transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_resolve_credential_needs_server():
    with pytest.raises(AuthenticationError):
        await resolve_credential("t")
