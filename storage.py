# storage.py
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel

from settings import settings

log = logging.getLogger(__name__)


class DownloadError(Exception):
    pass


class DownloadResult(BaseModel):
    url: str
    path: Optional[str] = None
    skipped: bool = False
    public_url: Optional[str] = None


# --- R2 / S3 ----------------------------------------------------------------

_s3 = None


def _r2_client():
    """
    Lazily build the S3 client for Cloudflare R2.
    endpoint_url must be the S3 API host (cloudflarestorage.com), region "auto",
    path-style addressing.
    """
    global _s3
    if _s3 is None:
        import boto3
        from botocore.config import Config

        endpoint = (settings.r2_endpoint_url or "").rstrip("/")
        if settings.r2_bucket and endpoint.endswith(f"/{settings.r2_bucket}"):
            endpoint = endpoint[: -(len(settings.r2_bucket) + 1)]
        _s3 = boto3.client(
            "s3",
            endpoint_url=endpoint or None,
            aws_access_key_id=settings.r2_access_key_id or None,
            aws_secret_access_key=settings.r2_secret_access_key or None,
            region_name="auto",
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )
    return _s3


def render_key(name: str) -> str:
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return f"renders/{day}/{name}"


def upload_to_r2(data: bytes, key: str, *, content_type: str = "video/mp4", expires: int = 3600) -> str:
    """
    Upload bytes and return a readable URL: the public base when configured,
    a presigned GET otherwise.
    """
    client = _r2_client()
    client.put_object(Bucket=settings.r2_bucket, Key=key, Body=data, ContentType=content_type)
    public_base = (settings.r2_public_base or "").rstrip("/")
    if public_base:
        return f"{public_base}/{key.lstrip('/')}"
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.r2_bucket, "Key": key},
        ExpiresIn=expires,
    )


# --- Local files ------------------------------------------------------------

def _sanitize(text: str, limit: int) -> str:
    return re.sub(r"[^a-z0-9]", "_", text, flags=re.IGNORECASE)[:limit]


def _existing_for_index(directory: Path, prompt_index: int) -> Optional[Path]:
    prefix = f"{prompt_index + 1}_"
    for entry in directory.iterdir():
        if entry.is_file() and entry.name.startswith(prefix):
            return entry
    return None


def _target_path(destination_hint: Optional[str], prompt_text: str, prompt_index: Optional[int]) -> Path:
    directory = Path(destination_hint or settings.download_dir)
    if directory.suffix.lower() == ".mp4":
        directory.parent.mkdir(parents=True, exist_ok=True)
        return directory

    directory.mkdir(parents=True, exist_ok=True)
    suffix = uuid.uuid4().hex[:6]
    if prompt_index is None:
        return directory / f"veo-video-{_sanitize(prompt_text, 50) or 'video'}_{suffix}.mp4"
    return directory / f"{prompt_index + 1}_{_sanitize(prompt_text, 30)}_{suffix}.mp4"


# --- API --------------------------------------------------------------------

async def download_artifact(
    url: str,
    destination_hint: Optional[str] = None,
    *,
    prompt_text: str = "",
    prompt_index: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> DownloadResult:
    """
    Fetch a finished video exactly as handed over by the pipeline and store it.

    destination_hint may be a directory (files are named
    "<index+1>_<prompt>_<random>.mp4" and an existing "<index+1>_" file
    skips the download) or a full .mp4 path. Without a hint DOWNLOAD_DIR
    is used. With STORAGE=r2 the bytes are also mirrored to R2.
    """
    if not url:
        raise DownloadError("no artifact URL")

    if prompt_index is not None and destination_hint and not destination_hint.lower().endswith(".mp4"):
        directory = Path(destination_hint)
        if directory.is_dir():
            existing = _existing_for_index(directory, prompt_index)
            if existing is not None:
                log.info("video for prompt #%d already exists (%s), skipping", prompt_index + 1, existing.name)
                return DownloadResult(url=url, path=str(existing), skipped=True)

    path = _target_path(destination_hint, prompt_text, prompt_index)

    timeout = httpx.Timeout(settings.request_timeout_sec, connect=10.0)
    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout, transport=transport) as client:
        try:
            r = await client.get(url)
        except httpx.HTTPError as e:
            raise DownloadError(f"download failed: {e}") from e
    if r.status_code >= 300:
        raise DownloadError(f"download failed: {r.status_code} {r.reason_phrase}")

    try:
        with open(path, "wb") as f:
            f.write(r.content)
    except OSError as e:
        raise DownloadError(f"could not write {path}: {e}") from e
    log.info("saved %s (%d bytes)", path, len(r.content))

    public_url = None
    if settings.storage == "r2":
        public_url = upload_to_r2(r.content, render_key(path.name))

    return DownloadResult(url=url, path=os.fspath(path), public_url=public_url)
