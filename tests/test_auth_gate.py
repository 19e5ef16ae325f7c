import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Blueprint, Flask, g, jsonify, request

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from auth_gate import AuthGate, require_role  # noqa: E402
from errors import Forbidden, TokenDenied, install_error_handlers  # noqa: E402
from schemas import Claims  # noqa: E402
from tokens import TokenService  # noqa: E402

KEY = "gate-test-signing-key-" + "x" * 32


@pytest.fixture
def tokens():
    return TokenService(KEY)


@pytest.fixture
def gate(tokens):
    return AuthGate(tokens)


def _bearer(tokens, role="teacher", subject_id=3, now=None):
    c = Claims(subject_id=subject_id, username=f"user{subject_id}", role=role, name="U")
    return {"Authorization": f"Bearer {tokens.issue(c, now=now)}"}


def test_require_role_passes_allowed_and_refuses_others():
    teacher = Claims(subject_id=1, username="t", role="teacher")
    assert require_role(teacher, ["teacher", "super_admin"]) is teacher
    with pytest.raises(Forbidden):
        require_role(teacher, ["super_admin"])


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": ""},
    {"Authorization": "Basic dXNlcjpwYXNz"},
    {"Authorization": "Bearer "},
    {"Authorization": "bearer abc.def.ghi"},
])
def test_authenticate_without_bearer_token_is_missing(gate, headers):
    app = Flask(__name__)
    with app.test_request_context("/", headers=headers):
        with pytest.raises(TokenDenied) as exc:
            gate.authenticate(request)
    assert exc.value.reason == "missing"


def test_authenticate_returns_claims(gate, tokens):
    app = Flask(__name__)
    with app.test_request_context("/", headers=_bearer(tokens, subject_id=9)):
        claims = gate.authenticate(request)
    assert claims.subject_id == 9 and claims.role == "teacher"


def _gated_app(gate, calls):
    app = Flask(__name__)
    app.testing = True
    bp = Blueprint("gated", __name__)
    install_error_handlers(bp)

    @bp.post("/admin-only")
    @gate.requires("super_admin")
    def admin_only():
        calls.append(g.claims.subject_id)
        return jsonify({"ok": True})

    @bp.get("/any-staff")
    @gate.requires()
    def any_staff():
        calls.append(g.claims.subject_id)
        return jsonify({"ok": True, "role": g.claims.role})

    app.register_blueprint(bp)
    return app.test_client()


def test_decorator_denies_before_handler_runs(gate, tokens):
    calls = []
    client = _gated_app(gate, calls)

    resp = client.post("/admin-only")
    assert resp.status_code == 401
    assert resp.get_json()["reason"] == "missing"

    resp = client.post("/admin-only", headers=_bearer(tokens, role="teacher"))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "forbidden"

    expired_at = datetime.now(timezone.utc) - timedelta(days=1)
    resp = client.post("/admin-only", headers=_bearer(tokens, role="super_admin", now=expired_at))
    assert resp.status_code == 401
    assert resp.get_json()["reason"] == "expired"

    assert calls == []


def test_decorator_runs_handler_with_claims(gate, tokens):
    calls = []
    client = _gated_app(gate, calls)

    resp = client.post("/admin-only", headers=_bearer(tokens, role="super_admin", subject_id=1))
    assert resp.status_code == 200
    resp = client.get("/any-staff", headers=_bearer(tokens, role="teacher", subject_id=4))
    assert resp.get_json() == {"ok": True, "role": "teacher"}
    assert calls == [1, 4]


def test_tampered_token_is_rejected_by_decorator(gate, tokens):
    calls = []
    client = _gated_app(gate, calls)
    header = _bearer(tokens, role="super_admin")["Authorization"]
    head, payload, sig = header[len("Bearer "):].split(".")
    flipped = ("B" if sig[5] == "A" else "A")
    bad = f"Bearer {head}.{payload}.{sig[:5]}{flipped}{sig[6:]}"

    resp = client.post("/admin-only", headers={"Authorization": bad})
    assert resp.status_code == 401
    assert resp.get_json()["reason"] == "bad_signature"
    assert calls == []
