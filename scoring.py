# scoring.py
"""
Server-side grading of single-choice exams.

Grading depends only on the authoritative question rows and the submitted
{question_id: choice_id} map. A `score` or `total` sent by the client is
never an input here.
"""
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional

SKIPPED = "Skipped"


def choice_key(value: Any) -> Optional[str]:
    """Normalise a question/choice id so 5, 5.0 and "5" compare equal."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    key = str(value).strip()
    return key or None


def parse_choices(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return []
    if not isinstance(raw, list):
        return []
    return [c for c in raw if isinstance(c, dict)]


def _correct_choice(choices: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for c in choices:
        if c.get("isCorrect") is True:
            return c
    return None


def score(questions: Iterable[Mapping[str, Any]], answers: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """
    Returns {"score", "total", "details"}; total is the number of questions.
    Missing answers and choice ids unknown to the question count as wrong,
    as does a question whose choices have no correct entry.
    """
    submitted = {choice_key(k): choice_key(v) for k, v in (answers or {}).items()}
    details: List[Dict[str, Any]] = []
    correct_count = 0
    total = 0

    for q in questions:
        total += 1
        choices = parse_choices(q.get("choices"))
        by_id = {}
        for c in choices:
            cid = choice_key(c.get("id"))
            if cid is not None and cid not in by_id:
                by_id[cid] = c

        right = _correct_choice(choices)
        picked_id = submitted.get(choice_key(q.get("id")))
        picked = by_id.get(picked_id) if picked_id is not None else None

        is_correct = (
            picked is not None
            and right is not None
            and choice_key(picked.get("id")) == choice_key(right.get("id"))
        )
        if is_correct:
            correct_count += 1

        details.append({
            "questionId": q.get("id"),
            "questionText": q.get("text") or "",
            "selectedText": (picked.get("text") or "") if picked is not None else SKIPPED,
            "correctText": (right.get("text") or "") if right is not None else "",
            "isCorrect": is_correct,
        })

    return {"score": correct_count, "total": total, "details": details}


def public_question(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Question as shown to an exam taker: choices without the answer key."""
    return {
        "id": row.get("id"),
        "exam_id": row.get("exam_id"),
        "text": row.get("text") or "",
        "image_key": row.get("image_key"),
        "choices": [{"id": c.get("id"), "text": c.get("text") or ""} for c in parse_choices(row.get("choices"))],
    }
