"""Shared fixtures: a scripted Labs backend served through httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest

from labs_client import STATUS_FAILED, STATUS_SUCCESSFUL, LabsCredential
from settings import AutomationLimits, settings

Scripted = Union[dict, httpx.Response, Callable[[httpx.Request], httpx.Response]]


def pending() -> dict:
    return {"status": "MEDIA_GENERATION_STATUS_ACTIVE"}


def failed(reason: str) -> dict:
    return {"status": STATUS_FAILED, "error": {"message": reason}}


def successful(url: Optional[str] = None, field: str = "fifeUrl") -> dict:
    video = {field: url} if url else {}
    return {"status": STATUS_SUCCESSFUL, "operation": {"metadata": {"video": video}}}


class FakeLabs:
    """
    Plays the Labs backend. Status checks follow `status_script[prompt]`
    (one entry consumed per check, then SUCCESSFUL with a deterministic URL).
    """

    def __init__(self) -> None:
        self.project_id = "proj-123"
        self.project_status = 200
        self.activation_status = 200
        self.requests: List[httpx.Request] = []
        self.generate_bodies: List[dict] = []
        self.status_bodies: List[dict] = []
        self.generate_script: Dict[str, List[Scripted]] = {}
        self.status_script: Dict[str, List[Scripted]] = {}
        self.on_generate: Optional[Callable[[dict], None]] = None
        self.on_status: Optional[Callable[[dict], None]] = None
        self.ops: Dict[str, str] = {}

    @staticmethod
    def url_for(op_name: str) -> str:
        return f"https://storage.example.com/video/{op_name}.mp4?sig=abc%3D&x=1"

    @property
    def generated_prompts(self) -> List[str]:
        return [b["requests"][0]["textInput"]["prompt"] for b in self.generate_bodies]

    def _scripted(self, script: Dict[str, List[Scripted]], prompt: str, request: httpx.Request):
        steps = script.get(prompt)
        if not steps:
            return None
        step = steps.pop(0)
        if callable(step):
            return step(request)
        return step

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else None

        if path.endswith("project.createProject"):
            if self.project_status != 200:
                return httpx.Response(self.project_status, text="denied")
            result = {"projectId": self.project_id, "projectInfo": {"projectTitle": "Test project"}}
            return httpx.Response(200, json={"result": {"data": {"json": {"result": result}}}})

        if "/next/data/" in path:
            return httpx.Response(self.activation_status, json={})

        if path.endswith("video:batchAsyncGenerateVideoText"):
            self.generate_bodies.append(body)
            if self.on_generate:
                self.on_generate(body)
            req = body["requests"][0]
            prompt = req["textInput"]["prompt"]
            scripted = self._scripted(self.generate_script, prompt, request)
            if isinstance(scripted, httpx.Response):
                return scripted
            if isinstance(scripted, dict):
                return httpx.Response(200, json=scripted)
            name = f"operations/op-{len(self.generate_bodies)}"
            self.ops[name] = prompt
            scene = req["metadata"]["sceneId"]
            return httpx.Response(200, json={"operations": [{"operation": {"name": name}, "sceneId": scene}]})

        if path.endswith("video:batchCheckAsyncVideoGenerationStatus"):
            self.status_bodies.append(body)
            if self.on_status:
                self.on_status(body)
            name = body["operations"][0][0]["operation"]["name"]
            prompt = self.ops[name]
            scripted = self._scripted(self.status_script, prompt, request)
            if isinstance(scripted, httpx.Response):
                return scripted
            result = scripted if scripted is not None else successful(self.url_for(name))
            result = {"operation": {"name": name}, "sceneId": "s", **result}
            return httpx.Response(200, json={"operations": [result]})

        return httpx.Response(404, text=f"unexpected {request.method} {path}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "activation_delay_sec", 0.0)
    monkeypatch.setattr(settings, "submit_interval_sec", 0.0)
    monkeypatch.setattr(settings, "poll_interval_sec", 0.0)
    monkeypatch.setattr(settings, "request_timeout_sec", 5.0)
    monkeypatch.setattr(settings, "storage", "local")
    monkeypatch.setattr(settings, "cookie_server_url", "")
    return settings


@pytest.fixture
def fake_labs() -> FakeLabs:
    return FakeLabs()


@pytest.fixture
def transport(fake_labs: FakeLabs) -> httpx.MockTransport:
    return httpx.MockTransport(fake_labs.handler)


@pytest.fixture
def credential() -> LabsCredential:
    return LabsCredential(name="test", cookie="SID=abc; HSID=def", bearer_token="Bearer ya29.token")


@pytest.fixture
def limits() -> AutomationLimits:
    return AutomationLimits(
        max_concurrent_sessions=2,
        max_retries=3,
        submit_interval_sec=0.0,
        poll_interval_sec=0.0,
        generation_timeout_sec=600.0,
    )
