# history.py
# Durable record of every generated video (survives restarts), fed by progress events.
from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Field, Session, SQLModel, create_engine, select

from events import EventStatus, ProgressEvent
from settings import settings


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VideoRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    job_id: str = Field(index=True)
    prompt_text: str
    status: str = "queued"  # queued|submitting|processing|retrying|success|error
    message: Optional[str] = None
    video_url: Optional[str] = None
    operation_name: Optional[str] = None
    scene_id: Optional[str] = None
    local_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


def make_engine(url: Optional[str] = None):
    url = url or settings.database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = make_engine()


def init_db(db_engine=None):
    SQLModel.metadata.create_all(db_engine or engine)


def _find(session: Session, run_id: str, job_id: str) -> Optional[VideoRecord]:
    stmt = select(VideoRecord).where(VideoRecord.run_id == run_id, VideoRecord.job_id == job_id)
    return session.exec(stmt).first()


def record_event(run_id: str, prompt_text: str, event: ProgressEvent, db_engine=None) -> Optional[VideoRecord]:
    """Upsert the row of the event's job. Run-level events (no job id) are not stored."""
    if event.job_id is None:
        return None
    with Session(db_engine or engine) as session:
        rec = _find(session, run_id, event.job_id)
        if rec is None:
            rec = VideoRecord(run_id=run_id, job_id=event.job_id, prompt_text=prompt_text)
        rec.status = event.status.value
        rec.message = event.message
        if event.operation_handle:
            rec.operation_name = event.operation_handle.name
            rec.scene_id = event.operation_handle.scene_id
        if event.status == EventStatus.SUCCESS:
            rec.video_url = event.artifact_url
            rec.error = None
        elif event.status == EventStatus.ERROR:
            rec.error = event.message
        rec.updated_at = _now()
        session.add(rec)
        session.commit()
        session.refresh(rec)
        return rec


def attach_local_path(run_id: str, job_id: str, local_path: str, db_engine=None):
    with Session(db_engine or engine) as session:
        rec = _find(session, run_id, job_id)
        if not rec:
            return
        rec.local_path = local_path
        rec.updated_at = _now()
        session.add(rec)
        session.commit()


def list_videos(limit: int = 100, db_engine=None) -> List[VideoRecord]:
    with Session(db_engine or engine) as session:
        stmt = select(VideoRecord).order_by(VideoRecord.updated_at.desc()).limit(limit)
        return list(session.exec(stmt).all())


def get_video(job_id: str, db_engine=None) -> Optional[VideoRecord]:
    """Latest record for a job id across runs."""
    with Session(db_engine or engine) as session:
        stmt = select(VideoRecord).where(VideoRecord.job_id == job_id).order_by(VideoRecord.updated_at.desc())
        return session.exec(stmt).first()
