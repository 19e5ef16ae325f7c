# exam.py
# -----------------------------------------------------------------------------
# Public exam API (no login): students reach an exam through its link_id.
# - Exam fetch strips the answer key from every choice
# - Submission is graded server-side; client score/total fields are ignored
# - Student lookups by school_id (identify, history, retake check)
# - Question images served from the content store
# -----------------------------------------------------------------------------

from typing import Any, Callable, Dict, List, Optional

import psycopg
from flask import Blueprint, Response, abort, jsonify, request

import scoring
from errors import NotFound, install_error_handlers
from schemas import CheckRequest, SchoolIdRequest, SubmissionRequest, parse_body
from submission import SubmissionCoordinator, exam_settings, is_active


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns the public exam Blueprint mounted at base_path.
    Required deps: fetch_one, fetch_all, execute, execute_returning
    Optional deps: content_store, coordinator
    """
    url_prefix = (base_path or "").rstrip("/") or None
    bp = Blueprint(name, __name__, url_prefix=url_prefix)
    install_error_handlers(bp)

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    content_store = deps.get("content_store")
    coordinator: SubmissionCoordinator = deps.get("coordinator") or SubmissionCoordinator(deps)

    def _json_body() -> Any:
        return request.get_json(force=True, silent=True)

    def _school_config() -> List[Dict[str, Any]]:
        try:
            return fetch_all("SELECT id, type, value FROM school_config ORDER BY value ASC;") or []
        except psycopg.Error as e:
            # exam page still works without class/section lists
            print(f"[exam] school_config unavailable: {e}")
            return []

    def _student_by_school_id(school_id: str) -> Optional[Dict[str, Any]]:
        return fetch_one("""
            SELECT id, school_id, name, roll, class, section, created_at
              FROM students
             WHERE school_id = %s;
        """, (school_id,))

    # ------------------------------- exam data --------------------------------
    @bp.get("/api/exam/get")
    def exam_get():
        link_id = (request.args.get("link_id") or "").strip()
        if not link_id:
            raise NotFound("Exam not found.")
        exam = coordinator.exam_by_link(link_id)
        questions = [scoring.public_question(q) for q in coordinator.questions(exam["id"])]
        return jsonify({
            "ok": True,
            "exam": {
                "id": exam["id"],
                "link_id": exam["link_id"],
                "title": exam.get("title") or "",
                "settings": exam_settings(exam.get("settings")),
                "is_active": is_active(exam.get("is_active")),
            },
            "questions": questions,
            "config": _school_config(),
        })

    # ------------------------------- students ---------------------------------
    @bp.post("/api/student/check")
    def student_check():
        body = parse_body(CheckRequest, _json_body())
        return jsonify({"ok": True, "canTake": coordinator.can_take(body.exam_id, body.school_id)})

    @bp.post("/api/student/identify")
    def student_identify():
        body = parse_body(SchoolIdRequest, _json_body())
        student = _student_by_school_id(body.school_id)
        if not student:
            return jsonify({"ok": True, "found": False})
        stats = fetch_one("""
            SELECT COUNT(*) AS total_exams,
                   AVG(score::float / NULLIF(total, 0)) * 100 AS avg_score
              FROM attempts
             WHERE student_db_id = %s;
        """, (student["id"],)) or {"total_exams": 0, "avg_score": None}
        return jsonify({"ok": True, "found": True, "student": student, "stats": stats})

    @bp.post("/api/student/portal-history")
    def student_portal_history():
        body = parse_body(SchoolIdRequest, _json_body())
        student = _student_by_school_id(body.school_id)
        if not student:
            return jsonify({"ok": True, "found": False})
        history = fetch_all("""
            SELECT a.id, a.exam_id, a.score, a.total, a.details, a.timestamp, e.title
              FROM attempts a
              JOIN exams e ON a.exam_id = e.id
             WHERE a.student_db_id = %s
             ORDER BY a.timestamp DESC;
        """, (student["id"],)) or []
        return jsonify({"ok": True, "found": True, "student": student, "history": history})

    # ------------------------------- submit -----------------------------------
    @bp.post("/api/submit")
    def submit():
        body = parse_body(SubmissionRequest, _json_body())
        result = coordinator.submit(
            body.link_id,
            body.student.school_id,
            body.student.profile_fields(),
            body.answers,
        )
        return jsonify({
            "ok": True,
            "score": result["score"],
            "total": result["total"],
            "details": result["details"],
        })

    # ------------------------------- images -----------------------------------
    @bp.get("/img/<key>")
    def image(key: str):
        found = content_store.get(key) if content_store else None
        if not found:
            abort(404)
        data, content_type = found
        return Response(data, mimetype=content_type, headers={"Cache-Control": "public, max-age=86400"})

    return bp
