#!/usr/bin/env python3
"""Run a batch of prompts from a text file without the HTTP service.

Usage:
    python cli.py prompts.txt --cookie "$LABS_COOKIE" --bearer "$LABS_BEARER"
    python cli.py prompts.txt --auth-token "$ACCOUNT_TOKEN" --aspect-ratio PORTRAIT --save-dir out/
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

import log_setup
from automation import AutomationController
from events import EventStatus, ProgressEvent
from labs_client import ASPECT_RATIOS, LabsCredential
from run_context import JobStatus
from settings import AutomationLimits, settings
from storage import DownloadError, download_artifact

_PREFIX = {
    EventStatus.SUBMITTING: "  ◌ ",
    EventStatus.PROCESSING: "  … ",
    EventStatus.SUCCESS: "  ✓ ",
    EventStatus.RETRYING: "  ⚠ ",
    EventStatus.ERROR: "  ✗ ",
}


def read_prompts(path: Path) -> List[str]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bulk text-to-video generation against Labs")
    parser.add_argument("prompts", type=Path, help="Text file, one prompt per line")
    parser.add_argument("--cookie", default=os.getenv("LABS_COOKIE", ""), help="Cookie header for labs.google (env LABS_COOKIE)")
    parser.add_argument("--bearer", default=os.getenv("LABS_BEARER", ""), help="Bearer token (env LABS_BEARER)")
    parser.add_argument("--auth-token", default=None, help="Account token; fetch the cookie from COOKIE_SERVER_URL instead")
    parser.add_argument("--model", default=settings.labs_default_model, help=f"Video model key (default: {settings.labs_default_model})")
    parser.add_argument("--aspect-ratio", choices=ASPECT_RATIOS, default="LANDSCAPE")
    parser.add_argument("--save-dir", default=None, help="Download finished videos into this directory")
    parser.add_argument("--max-concurrent", type=int, default=None, help="Max in-flight generations")
    parser.add_argument("--max-retries", type=int, default=None, help="Retries per prompt")
    parser.add_argument("--log-level", default=None, help="Console log level")
    return parser


async def run(args: argparse.Namespace, prompts: List[str]) -> int:
    controller = AutomationController()
    downloads: List[asyncio.Task] = []

    credential: Optional[LabsCredential] = None
    if args.cookie or args.bearer:
        credential = LabsCredential(name="cli", cookie=args.cookie, bearer_token=args.bearer)

    limits = AutomationLimits.from_settings(
        max_concurrent_sessions=args.max_concurrent,
        max_retries=args.max_retries,
    )
    ctx = controller.prepare(prompts, limits)

    def on_event(event: ProgressEvent) -> None:
        label = event.job_id or "all"
        print(f"{_PREFIX.get(event.status, '    ')}[{label}] {event.message}", flush=True)
        if args.save_dir and event.status == EventStatus.SUCCESS and event.job_id:
            job = ctx.jobs[event.job_id]
            downloads.append(asyncio.get_running_loop().create_task(
                download_artifact(event.artifact_url, args.save_dir, prompt_text=job.prompt_text, prompt_index=job.index)
            ))

    controller.emitter.subscribe(on_event)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.stop_automation)
    except NotImplementedError:
        pass  # Windows event loops

    await controller.run(ctx, credential=credential, auth_token=args.auth_token, model=args.model, aspect_ratio=args.aspect_ratio)

    for result in await asyncio.gather(*downloads, return_exceptions=True):
        if isinstance(result, DownloadError):
            print(f"  ✗ download failed: {result}", file=sys.stderr)
        elif isinstance(result, BaseException):
            raise result
        elif not result.skipped:
            print(f"  ↓ {result.path}")

    done = sum(1 for j in ctx.jobs.values() if j.status == JobStatus.SUCCESS)
    print(f"\n  {done}/{len(ctx.jobs)} videos generated")
    return 0 if done == len(ctx.jobs) else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    log_setup.configure(args.log_level)

    if not args.prompts.is_file():
        parser.error(f"{args.prompts} not found")
    prompts = read_prompts(args.prompts)
    if not prompts:
        print("✗  no prompts in file", file=sys.stderr)
        return 2
    if not (args.bearer or args.auth_token):
        print("✗  --bearer (or LABS_BEARER) or --auth-token is required", file=sys.stderr)
        return 2

    return asyncio.run(run(args, prompts))


if __name__ == "__main__":
    sys.exit(main())
