# admin.py
# -----------------------------------------------------------------------------
# Privileged API: install/reset, login, staff accounts, school config, exam
# authoring, analytics. Every route except status/setup/login (and init on an
# empty install) runs behind the AuthGate.
# -----------------------------------------------------------------------------

import os
import json
import uuid
from typing import Any, Callable, Dict, List, Optional

import psycopg
from flask import Blueprint, g, jsonify, request
from pydantic import TypeAdapter, ValidationError

import passwords
import scoring
from auth_gate import AuthGate, require_role
from content_store import ContentStore
from errors import (
    Forbidden, Malformed, NotFound, StorageError, Unauthorized, install_error_handlers,
)
from schemas import (
    ROLE_SUPER_ADMIN, ROLE_TEACHER, ROLES, Claims, ConfigAddRequest, ExamSaveRequest,
    IdRequest, LoginRequest, NewUserRequest, PasswordChangeRequest, QuestionChoice,
    ToggleRequest, parse_body,
)
from submission import exam_settings, is_active
from tokens import TokenService

# =========================
# Limits / constants
# =========================
EXAM_TITLE_MAX = int(os.getenv("EXAM_TITLE_MAX", "200"))
EXAM_SETTINGS_MAX = int(os.getenv("EXAM_SETTINGS_MAX", "5000"))
QUESTION_TEXT_MAX = 5000

STAFF = (ROLE_TEACHER, ROLE_SUPER_ADMIN)

# placeholders some clients send instead of omitting the field
_NULLISH = {"", "null", "undefined", "none"}

_CHOICES = TypeAdapter(List[QuestionChoice])

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          SERIAL PRIMARY KEY,
        username    TEXT NOT NULL UNIQUE,
        password    TEXT NOT NULL,
        name        TEXT,
        role        TEXT NOT NULL DEFAULT 'teacher',
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS students (
        id          SERIAL PRIMARY KEY,
        school_id   TEXT NOT NULL UNIQUE,
        name        TEXT,
        roll        TEXT,
        class       TEXT,
        section     TEXT,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS school_config (
        id     SERIAL PRIMARY KEY,
        type   TEXT NOT NULL,
        value  TEXT NOT NULL,
        UNIQUE (type, value)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS exams (
        id          SERIAL PRIMARY KEY,
        link_id     TEXT NOT NULL UNIQUE,
        title       TEXT NOT NULL,
        teacher_id  INTEGER,
        settings    TEXT,
        is_active   BOOLEAN NOT NULL DEFAULT TRUE,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        id         SERIAL PRIMARY KEY,
        exam_id    INTEGER NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
        text       TEXT,
        image_key  TEXT,
        choices    TEXT NOT NULL DEFAULT '[]'
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS attempts (
        id             SERIAL PRIMARY KEY,
        exam_id        INTEGER NOT NULL,
        student_db_id  INTEGER NOT NULL REFERENCES students(id),
        score          INTEGER NOT NULL,
        total          INTEGER NOT NULL,
        details        TEXT,
        timestamp      TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_questions_exam ON questions (exam_id);",
    "CREATE INDEX IF NOT EXISTS idx_attempts_exam ON attempts (exam_id);",
    "CREATE INDEX IF NOT EXISTS idx_attempts_student ON attempts (student_db_id);",
    "CREATE INDEX IF NOT EXISTS idx_exams_teacher ON exams (teacher_id);",
]

# children before parents
RESET_STATEMENTS = [
    "DELETE FROM attempts;",
    "DELETE FROM questions;",
    "DELETE FROM exams;",
    "DELETE FROM students;",
    "DELETE FROM school_config;",
]


def _size_label(n: int) -> str:
    mib = 1024 * 1024
    return f"{n // mib}MB" if n >= mib and n % mib == 0 else f"{n} byte"


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_admin_blueprint(base_path: str, deps: Dict[str, Any], name: str = "admin") -> Blueprint:
    """
    Factory that returns the privileged API Blueprint mounted at base_path.
    Required deps: fetch_one, fetch_all, execute, execute_returning, batch, tokens
    Optional deps: gate (built from tokens if absent), content_store
    """
    url_prefix = (base_path or "").rstrip("/") or None
    bp = Blueprint(name, __name__, url_prefix=url_prefix)
    install_error_handlers(bp)

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    batch: Callable = deps["batch"]
    tokens: TokenService = deps["tokens"]
    gate: AuthGate = deps.get("gate") or AuthGate(tokens)
    content_store: Optional[ContentStore] = deps.get("content_store")

    def _json_body() -> Any:
        return request.get_json(force=True, silent=True)

    def _int_arg(key: str) -> int:
        raw = (request.args.get(key) or "").strip()
        try:
            return int(raw)
        except ValueError:
            raise Malformed(f"Query parameter '{key}' must be an integer.") from None

    def _claims() -> Claims:
        return g.claims

    def _user_count() -> Optional[int]:
        """Number of staff accounts, or None before the schema exists."""
        try:
            row = fetch_one("SELECT COUNT(*) AS n FROM users;")
        except psycopg.errors.UndefinedTable:
            return None
        return int(row["n"]) if row else 0

    def _public_user(row: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": row["id"], "username": row["username"], "role": row["role"], "name": row.get("name") or ""}

    # ---- exam ownership -----------------------------------------------------
    def _owned_exam(exam_id: int) -> Dict[str, Any]:
        """Exam row the caller may manage: own exams for teachers, any for super_admin."""
        exam = fetch_one("""
            SELECT id, link_id, title, teacher_id, settings, is_active, created_at
              FROM exams
             WHERE id = %s;
        """, (exam_id,))
        if not exam:
            raise NotFound("Exam not found.")
        claims = _claims()
        if claims.role != ROLE_SUPER_ADMIN and exam.get("teacher_id") != claims.subject_id:
            raise Forbidden("This exam belongs to another teacher.")
        return exam

    def _exam_out(exam: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(exam)
        out["settings"] = exam_settings(exam.get("settings"))
        out["is_active"] = is_active(exam.get("is_active"))
        return out

    # =========================================================================
    # System
    # =========================================================================
    @bp.get("/api/system/status")
    def system_status():
        count = _user_count()
        if count is None:
            return jsonify({"ok": True, "installed": False, "hasAdmin": False})
        return jsonify({"ok": True, "installed": True, "hasAdmin": count > 0})

    @bp.post("/api/system/init")
    def system_init():
        count = _user_count()
        if count:
            require_role(gate.authenticate(request), [ROLE_SUPER_ADMIN])
        batch([(sql, None) for sql in SCHEMA_STATEMENTS])
        print(f"[system] schema ensured ({len(SCHEMA_STATEMENTS)} statements)", flush=True)
        return jsonify({"ok": True})

    @bp.post("/api/system/reset")
    @gate.requires(ROLE_SUPER_ADMIN)
    def system_reset():
        batch([(sql, None) for sql in RESET_STATEMENTS])
        print(f"[system] data reset by user={_claims().subject_id}", flush=True)
        return jsonify({"ok": True})

    # =========================================================================
    # Auth
    # =========================================================================
    @bp.post("/api/auth/setup-admin")
    def auth_setup_admin():
        count = _user_count()
        if count is None:
            raise StorageError("Database not initialized.")
        if count > 0:
            raise Forbidden("Admin already exists.")
        body = parse_body(NewUserRequest, _json_body())
        rows = execute_returning("""
            INSERT INTO users (username, password, name, role)
            VALUES (%s, %s, %s, %s)
            RETURNING id;
        """, (body.username, passwords.encode(body.password), body.name, ROLE_SUPER_ADMIN))
        print(f"[auth] super_admin created id={rows[0]['id'] if rows else '?'}", flush=True)
        return jsonify({"ok": True})

    @bp.post("/api/auth/login")
    def auth_login():
        body = parse_body(LoginRequest, _json_body())
        user = fetch_one("""
            SELECT id, username, password, name, role
              FROM users
             WHERE username = %s;
        """, (body.username,))

        def _upgrade(encoded: str) -> None:
            execute("UPDATE users SET password = %s WHERE id = %s;", (encoded, user["id"]))
            print(f"[auth] credential upgraded for user={user['id']}", flush=True)

        if not user or not passwords.verify(body.password, user.get("password"), upgrade=_upgrade):
            raise Unauthorized("Invalid credentials.")
        if user.get("role") not in ROLES:
            raise Forbidden("Account has no staff role.")

        claims = Claims(
            subject_id=user["id"],
            username=user["username"],
            role=user["role"],
            name=user.get("name") or "",
        )
        return jsonify({"ok": True, "token": tokens.issue(claims), "user": _public_user(user)})

    @bp.post("/api/auth/password")
    @gate.requires()
    def auth_password():
        body = parse_body(PasswordChangeRequest, _json_body())
        user = fetch_one("SELECT id, password FROM users WHERE id = %s;", (_claims().subject_id,))
        if not user:
            raise Unauthorized("Account no longer exists.")
        if not passwords.verify(body.current_password, user.get("password")):
            raise Unauthorized("Current password is incorrect.")
        execute("UPDATE users SET password = %s WHERE id = %s;",
                (passwords.encode(body.new_password), user["id"]))
        return jsonify({"ok": True})

    # =========================================================================
    # Staff & students (super_admin)
    # =========================================================================
    @bp.get("/api/admin/teachers")
    @gate.requires(ROLE_SUPER_ADMIN)
    def teachers_list():
        rows = fetch_all("""
            SELECT id, name, username, created_at
              FROM users
             WHERE role = %s
             ORDER BY created_at DESC;
        """, (ROLE_TEACHER,)) or []
        return jsonify({"ok": True, "teachers": rows})

    @bp.post("/api/admin/teachers")
    @gate.requires(ROLE_SUPER_ADMIN)
    def teachers_create():
        body = parse_body(NewUserRequest, _json_body())
        try:
            rows = execute_returning("""
                INSERT INTO users (username, password, name, role)
                VALUES (%s, %s, %s, %s)
                RETURNING id;
            """, (body.username, passwords.encode(body.password), body.name, ROLE_TEACHER))
        except psycopg.errors.UniqueViolation:
            raise Malformed("Username already taken.") from None
        return jsonify({"ok": True, "id": rows[0]["id"] if rows else None})

    @bp.post("/api/admin/teacher/delete")
    @gate.requires(ROLE_SUPER_ADMIN)
    def teacher_delete():
        body = parse_body(IdRequest, _json_body())
        rows = execute_returning(
            "DELETE FROM users WHERE id = %s AND role = %s RETURNING id;",
            (body.id, ROLE_TEACHER),
        )
        if not rows:
            raise NotFound("Teacher not found.")
        return jsonify({"ok": True})

    @bp.post("/api/admin/student/delete")
    @gate.requires(ROLE_SUPER_ADMIN)
    def student_delete():
        body = parse_body(IdRequest, _json_body())
        batch([
            ("DELETE FROM attempts WHERE student_db_id = %s;", (body.id,)),
            ("DELETE FROM students WHERE id = %s;", (body.id,)),
        ])
        return jsonify({"ok": True})

    @bp.get("/api/admin/credentials/legacy")
    @gate.requires(ROLE_SUPER_ADMIN)
    def credentials_legacy():
        rows = fetch_all("SELECT id, password FROM users;") or []
        legacy = [r["id"] for r in rows if passwords.is_legacy(r.get("password"))]
        outdated = [r["id"] for r in rows if passwords.needs_upgrade(r.get("password"))]
        return jsonify({
            "ok": True,
            "legacy": len(legacy),
            "outdated": len(outdated),
            "fallback_enabled": passwords.LEGACY_FALLBACK,
        })

    # =========================================================================
    # School config (class / section lists)
    # =========================================================================
    @bp.get("/api/config/get")
    @gate.requires()
    def config_get():
        rows = fetch_all("SELECT id, type, value FROM school_config ORDER BY value ASC;") or []
        return jsonify({"ok": True, "config": rows})

    @bp.post("/api/config/add")
    @gate.requires(ROLE_SUPER_ADMIN)
    def config_add():
        body = parse_body(ConfigAddRequest, _json_body())
        try:
            rows = execute_returning(
                "INSERT INTO school_config (type, value) VALUES (%s, %s) RETURNING id;",
                (body.type, body.value),
            )
        except psycopg.errors.UniqueViolation:
            raise Malformed(f"{body.type} '{body.value}' already exists.") from None
        return jsonify({"ok": True, "id": rows[0]["id"] if rows else None, "type": body.type, "value": body.value})

    @bp.post("/api/config/delete")
    @gate.requires(ROLE_SUPER_ADMIN)
    def config_delete():
        body = parse_body(IdRequest, _json_body())
        execute("DELETE FROM school_config WHERE id = %s;", (body.id,))
        return jsonify({"ok": True})

    # =========================================================================
    # Exam authoring (teacher / super_admin)
    # =========================================================================
    @bp.post("/api/exam/save")
    @gate.requires(*STAFF)
    def exam_save():
        body = parse_body(ExamSaveRequest, _json_body())
        claims = _claims()
        if len(body.title) > EXAM_TITLE_MAX:
            raise Malformed("Title too long.")
        settings_text = json.dumps(body.settings or {}, ensure_ascii=False)
        if len(settings_text) > EXAM_SETTINGS_MAX:
            raise Malformed("Settings too large.")

        if body.id:
            exam = _owned_exam(body.id)
            # questions are re-sent one by one after a save
            batch([
                ("UPDATE exams SET title = %s, settings = %s WHERE id = %s;",
                 (body.title, settings_text, exam["id"])),
                ("DELETE FROM questions WHERE exam_id = %s;", (exam["id"],)),
            ])
            return jsonify({"ok": True, "id": exam["id"], "link_id": exam["link_id"]})

        teacher_id = claims.subject_id
        if claims.role == ROLE_SUPER_ADMIN and body.teacher_id:
            teacher_id = body.teacher_id
        link_id = str(uuid.uuid4())
        rows = execute_returning("""
            INSERT INTO exams (link_id, title, teacher_id, settings)
            VALUES (%s, %s, %s, %s)
            RETURNING id;
        """, (link_id, body.title, teacher_id, settings_text))
        exam_id = rows[0]["id"] if rows else None
        print(f"[exam] created id={exam_id} teacher={teacher_id}", flush=True)
        return jsonify({"ok": True, "id": exam_id, "link_id": link_id})

    @bp.post("/api/exam/toggle")
    @gate.requires(*STAFF)
    def exam_toggle():
        body = parse_body(ToggleRequest, _json_body())
        exam = _owned_exam(body.id)
        execute("UPDATE exams SET is_active = %s WHERE id = %s;", (body.is_active, exam["id"]))
        return jsonify({"ok": True, "is_active": body.is_active})

    def _drop_orphan_images(keys) -> int:
        # blobs can be shared across questions via existing_image_key
        if content_store is None:
            return 0
        dropped = 0
        for key in sorted(keys):
            if fetch_one("SELECT id FROM questions WHERE image_key = %s LIMIT 1;", (key,)):
                continue
            if content_store.delete(key):
                dropped += 1
        if dropped:
            print(f"[exam] removed {dropped} unreferenced image(s)", flush=True)
        return dropped

    @bp.post("/api/exam/delete")
    @gate.requires(*STAFF)
    def exam_delete():
        body = parse_body(IdRequest, _json_body())
        exam = _owned_exam(body.id)
        image_keys = {
            r["image_key"]
            for r in fetch_all("SELECT id, image_key FROM questions WHERE exam_id = %s;", (exam["id"],)) or []
            if r.get("image_key")
        }
        batch([
            ("DELETE FROM attempts WHERE exam_id = %s;", (exam["id"],)),
            ("DELETE FROM questions WHERE exam_id = %s;", (exam["id"],)),
            ("DELETE FROM exams WHERE id = %s;", (exam["id"],)),
        ])
        _drop_orphan_images(image_keys)
        return jsonify({"ok": True})

    def _parse_choices_field(raw: Optional[str]) -> List[Dict[str, Any]]:
        try:
            data = json.loads(raw or "")
        except ValueError:
            raise Malformed("Field 'choices' must be a JSON array.") from None
        try:
            choices = _CHOICES.validate_python(data)
        except ValidationError as e:
            first = (e.errors() or [{}])[0]
            where = ".".join(str(p) for p in first.get("loc", ())) or "choices"
            raise Malformed(f"Invalid choice '{where}': {first.get('msg', 'invalid')}") from None
        if not choices:
            raise Malformed("A question needs at least one choice.")
        return [c.model_dump() for c in choices]

    def _image_key_from_form() -> Optional[str]:
        upload = request.files.get("image")
        if upload is not None and upload.filename:
            if content_store is None:
                raise Malformed("Image uploads are not configured.")
            limit = content_store.max_bytes
            data = upload.stream.read(limit + 1)
            if len(data) > limit:
                raise Malformed(f"Image exceeds {_size_label(limit)} limit.")
            if data:
                return content_store.put(data, upload.mimetype)

        existing = (request.form.get("existing_image_key") or "").strip()
        if existing.lower() in _NULLISH:
            return None
        if not ContentStore.valid_key(existing):
            raise Malformed("Unknown image key.")
        return existing

    @bp.post("/api/question/add")
    @gate.requires(*STAFF)
    def question_add():
        try:
            exam_id = int(request.form.get("exam_id") or "")
        except ValueError:
            raise Malformed("Field 'exam_id' must be an integer.") from None
        exam = _owned_exam(exam_id)

        text = (request.form.get("text") or "").strip()
        if len(text) > QUESTION_TEXT_MAX:
            raise Malformed("Question text too long.")
        choices = _parse_choices_field(request.form.get("choices"))
        image_key = _image_key_from_form()

        rows = execute_returning("""
            INSERT INTO questions (exam_id, text, image_key, choices)
            VALUES (%s, %s, %s, %s)
            RETURNING id;
        """, (exam["id"], text, image_key, json.dumps(choices, ensure_ascii=False)))
        return jsonify({"ok": True, "id": rows[0]["id"] if rows else None, "image_key": image_key})

    @bp.get("/api/teacher/exams")
    @gate.requires(*STAFF)
    def teacher_exams():
        claims = _claims()
        if claims.role == ROLE_SUPER_ADMIN and request.args.get("teacher_id") is None:
            rows = fetch_all("""
                SELECT id, link_id, title, teacher_id, settings, is_active, created_at
                  FROM exams
                 ORDER BY created_at DESC;
            """) or []
        else:
            teacher_id = claims.subject_id
            if claims.role == ROLE_SUPER_ADMIN:
                teacher_id = _int_arg("teacher_id")
            rows = fetch_all("""
                SELECT id, link_id, title, teacher_id, settings, is_active, created_at
                  FROM exams
                 WHERE teacher_id = %s
                 ORDER BY created_at DESC;
            """, (teacher_id,)) or []
        return jsonify({"ok": True, "exams": [_exam_out(r) for r in rows]})

    @bp.get("/api/teacher/exam-details")
    @gate.requires(*STAFF)
    def teacher_exam_details():
        exam = _owned_exam(_int_arg("id"))
        rows = fetch_all("""
            SELECT id, exam_id, text, image_key, choices
              FROM questions
             WHERE exam_id = %s
             ORDER BY id ASC;
        """, (exam["id"],)) or []
        questions = [{**r, "choices": scoring.parse_choices(r.get("choices"))} for r in rows]
        return jsonify({"ok": True, "exam": _exam_out(exam), "questions": questions})

    # =========================================================================
    # Analytics
    # =========================================================================
    @bp.get("/api/analytics/exam")
    @gate.requires(*STAFF)
    def analytics_exam():
        exam = _owned_exam(_int_arg("exam_id"))
        rows = fetch_all("""
            SELECT a.id, a.exam_id, a.score, a.total, a.details, a.timestamp,
                   s.name, s.school_id, s.roll, s.class, s.section
              FROM attempts a
              JOIN students s ON a.student_db_id = s.id
             WHERE a.exam_id = %s
             ORDER BY a.timestamp DESC;
        """, (exam["id"],)) or []
        return jsonify({"ok": True, "attempts": rows})

    @bp.get("/api/students/list")
    @gate.requires(*STAFF)
    def students_list():
        rows = fetch_all("""
            SELECT s.id, s.school_id, s.name, s.roll, s.class, s.section, s.created_at,
                   COUNT(a.id) AS exams_count,
                   AVG(a.score::float / NULLIF(a.total, 0)) * 100 AS avg_score
              FROM students s
              LEFT JOIN attempts a ON s.id = a.student_db_id
             GROUP BY s.id
             ORDER BY s.created_at DESC;
        """) or []
        return jsonify({"ok": True, "students": rows})

    return bp
