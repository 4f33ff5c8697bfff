"""
Answer grading for every supported question format.

``grade`` is a pure function of a question definition and a submitted
answer. It performs no I/O and never raises on malformed stored keys;
payload validation happens up front in ``validate_answer``.
"""
import enum
import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from qbank_scoring.core.errors import ValidationError
from qbank_scoring.services.answer_keys import decode_options, decode_stored

BOWTIE_MAX_SCORE = 5
BOWTIE_SET_CAP = 2
# units in the last place of the operands allowed at the tolerance boundary
BOUNDARY_ULPS = 4


class QuestionFormat(str, enum.Enum):
    SINGLE = "single"
    SATA = "sata"
    ORDERING = "ordering"
    BOWTIE = "bowtie"
    CASE_STUDY = "case_study"
    DOSAGE = "dosage"
    MAPPING = "mapping"


TYPE_ALIASES: Dict[str, QuestionFormat] = {
    "single": QuestionFormat.SINGLE,
    "standard": QuestionFormat.SINGLE,
    "multiple_choice": QuestionFormat.SINGLE,
    "true_false": QuestionFormat.SINGLE,
    "fill_blank": QuestionFormat.SINGLE,
    "sata": QuestionFormat.SATA,
    "sata_classic": QuestionFormat.SATA,
    "multiple_response": QuestionFormat.SATA,
    "select_n": QuestionFormat.SATA,
    "ordering": QuestionFormat.ORDERING,
    "ranking": QuestionFormat.ORDERING,
    "ordered_response": QuestionFormat.ORDERING,
    "bowtie": QuestionFormat.BOWTIE,
    "bow_tie": QuestionFormat.BOWTIE,
    "casestudy": QuestionFormat.CASE_STUDY,
    "case_study": QuestionFormat.CASE_STUDY,
    "ngn_case_study": QuestionFormat.CASE_STUDY,
    "dosage_calculation": QuestionFormat.DOSAGE,
    "calculation": QuestionFormat.DOSAGE,
    "numeric": QuestionFormat.DOSAGE,
    "matrix": QuestionFormat.MAPPING,
    "matrix_multiple_response": QuestionFormat.MAPPING,
    "drag_drop": QuestionFormat.MAPPING,
    "extended_drag_drop": QuestionFormat.MAPPING,
    "cloze": QuestionFormat.MAPPING,
}

OBJECT_FORMATS = (QuestionFormat.BOWTIE, QuestionFormat.CASE_STUDY, QuestionFormat.MAPPING)


@dataclass(frozen=True)
class GradeResult:
    is_correct: bool
    is_partially_correct: bool
    points_earned: int
    max_points: int
    raw_score: Optional[int] = None
    max_raw_score: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isCorrect": self.is_correct,
            "isPartiallyCorrect": self.is_partially_correct,
            "pointsEarned": self.points_earned,
        }


def question_format(question_type: Optional[str]) -> QuestionFormat:
    key = (question_type or "").strip().lower().replace("-", "_")
    return TYPE_ALIASES.get(key, QuestionFormat.SINGLE)


def canonical(value: Any) -> str:
    """Text form used for comparisons, so 1, 1.0 and "1" agree."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _unwrap(value: Any) -> Any:
    # clients wrap single answers and objects in one-element lists
    if isinstance(value, (list, tuple)) and len(value) == 1:
        return value[0]
    return value


def _canon_set(values: Iterable[Any]) -> Set[str]:
    return {canonical(v) for v in values}


def _floor_share(matched: int, total: int, max_points: int) -> int:
    if total <= 0:
        return 0
    return math.floor((matched / total) * max_points)


def _result(score: int, total: int, max_points: int) -> GradeResult:
    is_correct = total > 0 and score == total
    is_partial = 0 < score < total
    points = max_points if is_correct else _floor_share(score, total, max_points)
    return GradeResult(is_correct, is_partial, min(points, max_points), max_points, score, total)


def is_blank(answer: Any) -> bool:
    if answer is None:
        return True
    if isinstance(answer, str):
        return not answer.strip()
    if isinstance(answer, (list, tuple, dict)):
        return len(answer) == 0
    return False


def validate_answer(question: Any, answer: Any) -> None:
    """Reject missing or wrongly shaped payloads before grading runs."""
    if is_blank(answer):
        raise ValidationError("Answer is required", {"question_id": getattr(question, "id", None)})
    fmt = question_format(question.question_type)
    if fmt in OBJECT_FORMATS and not isinstance(_unwrap(answer), dict):
        raise ValidationError(
            f"{fmt.value} answers must be an object",
            {"question_id": getattr(question, "id", None), "question_type": question.question_type},
        )


def grade(question: Any, submitted: Any) -> GradeResult:
    """Grade ``submitted`` against the question's stored key."""
    max_points = int(question.points or 0)
    correct = decode_stored(question.correct_answer).value
    fmt = question_format(question.question_type)
    if fmt is QuestionFormat.SATA:
        return _grade_sata(correct, submitted, max_points)
    if fmt is QuestionFormat.ORDERING:
        return _grade_ordering(correct, submitted, max_points)
    if fmt is QuestionFormat.BOWTIE:
        return _grade_bowtie(correct, submitted, max_points)
    if fmt is QuestionFormat.CASE_STUDY:
        return _grade_case_study(question, correct, submitted, max_points)
    if fmt is QuestionFormat.DOSAGE:
        return _grade_dosage(question, correct, submitted, max_points)
    if fmt is QuestionFormat.MAPPING:
        return _grade_mapping(correct, submitted, max_points)
    return _grade_single(correct, submitted, max_points)


def _grade_single(correct: Any, submitted: Any, max_points: int) -> GradeResult:
    ok = canonical(_unwrap(submitted)) == canonical(_unwrap(correct))
    return GradeResult(ok, False, max_points if ok else 0, max_points)


def _grade_sata(correct: Any, submitted: Any, max_points: int) -> GradeResult:
    correct_set = _canon_set(_as_list(correct))
    submitted_set = _canon_set(_as_list(submitted))
    if submitted_set == correct_set:
        return GradeResult(True, False, max_points, max_points, len(correct_set), len(correct_set))
    matched = len(submitted_set & correct_set)
    if matched == 0:
        return GradeResult(False, False, 0, max_points, 0, len(correct_set))
    points = _floor_share(matched, len(correct_set), max_points)
    return GradeResult(False, True, points, max_points, matched, len(correct_set))


def _grade_ordering(correct: Any, submitted: Any, max_points: int) -> GradeResult:
    if not isinstance(correct, list):
        return _grade_single(correct, submitted, max_points)
    ok = [canonical(v) for v in _as_list(submitted)] == [canonical(v) for v in correct]
    return GradeResult(ok, False, max_points if ok else 0, max_points)


def _intersection(correct: Any, submitted: Any) -> int:
    return len(_canon_set(_as_list(correct or [])) & _canon_set(_as_list(submitted or [])))


def _grade_bowtie(correct: Any, submitted: Any, max_points: int) -> GradeResult:
    answer = _unwrap(submitted)
    key = correct if isinstance(correct, dict) else {}
    if not isinstance(answer, dict) or not key:
        return _result(0, BOWTIE_MAX_SCORE, max_points)
    score = 0
    if "condition" in key and canonical(answer.get("condition")) == canonical(key.get("condition")):
        score += 1
    score += min(_intersection(key.get("findings"), answer.get("findings")), BOWTIE_SET_CAP)
    score += min(_intersection(key.get("actions"), answer.get("actions")), BOWTIE_SET_CAP)
    return _result(score, BOWTIE_MAX_SCORE, max_points)


def _step_manifest(question: Any, correct: Any) -> Dict[str, Any]:
    steps = decode_options(question.options).get("steps")
    if isinstance(steps, dict) and steps:
        manifest = {}
        for step_key, step in steps.items():
            manifest[str(step_key)] = step.get("correctAnswer") if isinstance(step, dict) else step
        return manifest
    if isinstance(steps, list) and steps:
        return {str(i + 1): (s.get("correctAnswer") if isinstance(s, dict) else s) for i, s in enumerate(steps)}
    # legacy rows keep the per-step key in the answer column
    if isinstance(correct, dict):
        return {str(k): v for k, v in correct.items()}
    return {}


def _grade_case_study(question: Any, correct: Any, submitted: Any, max_points: int) -> GradeResult:
    manifest = _step_manifest(question, correct)
    answer = _unwrap(submitted)
    if not manifest or not isinstance(answer, dict):
        return _result(0, len(manifest), max_points)
    answer = {str(k): v for k, v in answer.items()}
    score = sum(
        1 for step_key, expected in manifest.items()
        if step_key in answer and canonical(answer[step_key]) == canonical(expected)
    )
    return _result(score, len(manifest), max_points)


def tolerance_for(question: Any) -> float:
    if question.tolerance is not None:
        return abs(float(question.tolerance))
    opts = decode_options(question.options)
    dosage = opts.get("dosageData") if isinstance(opts.get("dosageData"), dict) else opts
    try:
        return abs(float(dosage.get("tolerance") or 0))
    except (TypeError, ValueError):
        return 0.0


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _grade_dosage(question: Any, correct: Any, submitted: Any, max_points: int) -> GradeResult:
    answer = _unwrap(submitted)
    expected = _unwrap(correct)
    answer_num, expected_num = _to_number(answer), _to_number(expected)
    if answer_num is not None and expected_num is not None:
        diff, tolerance = abs(answer_num - expected_num), tolerance_for(question)
        ok = diff <= tolerance + BOUNDARY_ULPS * math.ulp(max(abs(answer_num), abs(expected_num)))
    else:
        ok = canonical(answer) == canonical(expected)
    return GradeResult(ok, False, max_points if ok else 0, max_points)


def _grade_mapping(correct: Any, submitted: Any, max_points: int) -> GradeResult:
    answer = _unwrap(submitted)
    if not isinstance(correct, dict) or not correct or not isinstance(answer, dict):
        return GradeResult(False, False, 0, max_points, 0, len(correct) if isinstance(correct, dict) else 0)
    key = {str(k): v for k, v in correct.items()}
    answer = {str(k): v for k, v in answer.items()}
    matches = sum(1 for k, v in key.items() if k in answer and canonical(answer[k]) == canonical(v))
    if matches == len(key) and set(answer) == set(key):
        return GradeResult(True, False, max_points, max_points, matches, len(key))
    if matches > 0:
        return GradeResult(False, True, _floor_share(matches, len(key), max_points), max_points, matches, len(key))
    return GradeResult(False, False, 0, max_points, 0, len(key))
