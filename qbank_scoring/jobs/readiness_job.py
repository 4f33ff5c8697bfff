import logging
from rq import get_current_job
from qbank_scoring.core import database
from qbank_scoring.core.errors import NotFoundError
from qbank_scoring.core.locks import enrollment_lock
from qbank_scoring.services.question_bank import EnrollmentDirectory
from qbank_scoring.services.readiness import ReadinessCalculator

logger = logging.getLogger(__name__)


def _update_meta(**meta):
    job = get_current_job()
    if job is not None:
        job.meta.update(meta); job.save_meta()


def recalculate_readiness_job(student_id: int, qbank_id: int):
    """Recompute and persist readiness for one enrollment, e.g. after a rollup repair."""
    _update_meta(state="running")
    db = database.SessionLocal()
    try:
        with enrollment_lock(student_id, qbank_id):
            enrollment = EnrollmentDirectory(db).get_enrollment(student_id, qbank_id, for_update=True)
            if enrollment is None:
                raise NotFoundError("Enrollment not found", {"student_id": student_id, "qbank_id": qbank_id})
            result = ReadinessCalculator(db).refresh(enrollment)
            db.commit()
        _update_meta(state="done")
        return {"enrollment_id": enrollment.id, **result.to_dict()}
    except Exception as e:
        db.rollback()
        logger.error(f"Readiness recalculation failed for student {student_id} qbank {qbank_id}: {e}")
        _update_meta(state="failed", error=str(e))
        raise
    finally:
        db.close()
