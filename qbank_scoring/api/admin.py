from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from rq.exceptions import NoSuchJobError
from rq.job import Job

from qbank_scoring.core.auth import require_roles
from qbank_scoring.jobs.queue import queue, redis
from qbank_scoring.jobs.readiness_job import recalculate_readiness_job

router = APIRouter()


class Recalculate(BaseModel):
    student_id: int
    qbank_id: int


class RecalcStatus(BaseModel):
    state: str
    result: dict | None = None
    error: str | None = None


@router.post("/readiness/recalculate", status_code=202, dependencies=[Depends(require_roles("admin"))])
def recalculate(payload: Recalculate):
    job = queue.enqueue(recalculate_readiness_job, payload.student_id, payload.qbank_id, job_timeout=600)
    return {"job_id": job.get_id()}


@router.get("/readiness/status", response_model=RecalcStatus, dependencies=[Depends(require_roles("admin"))])
def recalc_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=redis)
    except NoSuchJobError:
        raise HTTPException(404, "Job not found")
    meta = job.meta or {}
    state = meta.get("state") or getattr(job.get_status(), "value", "unknown")
    return RecalcStatus(state=state, result=job.return_value() if state == "done" else None, error=meta.get("error"))
