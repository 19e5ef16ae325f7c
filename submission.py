# submission.py
"""
Exam submission pipeline:
  exam by link -> questions -> retake guard -> identity -> score -> attempt row.

Every refusal (unknown link, closed exam, retake blocked) happens before the
first write, so a refused submission leaves nothing behind. Student upsert
and attempt insert are separate statements; a retry after a failure between
them is safe because identity resolution is idempotent.
"""
import json
from typing import Any, Callable, Dict, List, Mapping, Optional

import scoring
from errors import AlreadyAttempted, Closed, NotFound
from identity import IdentityResolver


def exam_settings(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def allows_retakes(settings_raw: Any) -> bool:
    return exam_settings(settings_raw).get("allowRetakes") is True


def is_active(value: Any) -> bool:
    # column default is active; older rows store 1/0
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true", "yes")
    return bool(value)


class SubmissionCoordinator:
    """
    deps:
      - fetch_one, fetch_all, execute, execute_returning
      - identity (optional): an IdentityResolver; built from the same deps if absent
    """

    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute_returning: Callable = deps["execute_returning"]
        self.identity: IdentityResolver = deps.get("identity") or IdentityResolver(deps)

    # ------------------------------------------------------------------ reads
    def exam_by_link(self, link_id: str) -> Dict[str, Any]:
        exam = self.fetch_one("""
            SELECT id, link_id, title, teacher_id, settings, is_active
              FROM exams
             WHERE link_id = %s;
        """, (link_id,))
        if not exam:
            raise NotFound("Exam not found.")
        return exam

    def questions(self, exam_id: int) -> List[Dict[str, Any]]:
        return self.fetch_all("""
            SELECT id, exam_id, text, image_key, choices
              FROM questions
             WHERE exam_id = %s
             ORDER BY id ASC;
        """, (exam_id,)) or []

    def has_attempt(self, exam_id: int, student_id: int) -> bool:
        row = self.fetch_one("""
            SELECT id FROM attempts WHERE exam_id = %s AND student_db_id = %s LIMIT 1;
        """, (exam_id, student_id))
        return bool(row)

    # ------------------------------------------------------------------ policy
    def _retake_blocked(self, exam: Mapping[str, Any], school_id: str) -> bool:
        """The single one-attempt guard. Read-only."""
        if allows_retakes(exam.get("settings")):
            return False
        student_id = self.identity.find(school_id)
        return student_id is not None and self.has_attempt(exam["id"], student_id)

    def can_take(self, exam_id: int, school_id: str) -> bool:
        exam = self.fetch_one("SELECT id, settings, is_active FROM exams WHERE id = %s;", (exam_id,))
        if not exam:
            raise NotFound("Exam not found.")
        if not is_active(exam.get("is_active")):
            return False
        return not self._retake_blocked(exam, school_id)

    # ------------------------------------------------------------------ submit
    def submit(self, link_id: str, school_id: str, profile: Dict[str, Any],
               answers: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
        exam = self.exam_by_link(link_id)
        if not is_active(exam.get("is_active")):
            raise Closed()

        questions = self.questions(exam["id"])
        if not questions:
            raise NotFound("This exam has no questions.")

        if self._retake_blocked(exam, school_id):
            raise AlreadyAttempted()

        student_id = self.identity.resolve_or_create(school_id, profile)
        result = scoring.score(questions, answers)

        rows = self.execute_returning("""
            INSERT INTO attempts (exam_id, student_db_id, score, total, details, timestamp)
            VALUES (%s, %s, %s, %s, %s, now())
            RETURNING id;
        """, (exam["id"], student_id, result["score"], result["total"],
              json.dumps(result["details"], ensure_ascii=False)))

        print(f"[submit] exam={exam['id']} student={student_id} "
              f"score={result['score']}/{result['total']}", flush=True)
        return {
            "attempt_id": rows[0]["id"] if rows else None,
            "exam_id": exam["id"],
            "student_id": student_id,
            **result,
        }
