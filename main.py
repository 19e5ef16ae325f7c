# main.py: exam portal API, BASE_PATH-aware (psycopg3 + pooling)
# Wires the store helpers, token service and content store into the
# public exam blueprint and the privileged admin blueprint.

import os
from contextlib import contextmanager
from datetime import timedelta
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Iterable, Optional, Sequence, Tuple

from flask import Flask

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row

from admin import create_admin_blueprint
from auth_gate import AuthGate
from content_store import ContentStore
from exam import create_exam_blueprint
from tokens import TokenService

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(2 * 1024 * 1024)))

app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    JSON_SORT_KEYS=False,
    # multipart question uploads carry the image plus a few form fields
    MAX_CONTENT_LENGTH=MAX_IMAGE_BYTES + 256 * 1024,
)

# =============================================================================
# Auth configuration
# =============================================================================
JWT_SECRET = os.getenv("JWT_SECRET")
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET must be set (a long random string).")
TOKEN_LIFETIME_MINUTES = int(os.getenv("TOKEN_LIFETIME_MINUTES", "480"))

tokens = TokenService(JWT_SECRET, lifetime=timedelta(minutes=TOKEN_LIFETIME_MINUTES))
gate = AuthGate(tokens)

CONTENT_DIR = os.getenv("CONTENT_DIR", os.path.join(os.getcwd(), "content"))
content_store = ContentStore(CONTENT_DIR, MAX_IMAGE_BYTES)

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or "5432")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_SSLMODE = os.getenv("DB_SSLMODE", "prefer")

DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "6"))

_SA_SCHEMES = ("postgresql+psycopg", "postgres+psycopg", "postgresql+psycopg2", "postgres+psycopg2")

def _url_kwargs(url: str) -> dict:
    """libpq keyword args from a postgres:// URL (SQLAlchemy-style schemes accepted)."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        raise ValueError("DATABASE_URL is not a URL")
    if scheme in _SA_SCHEMES:
        scheme = "postgresql"
    if scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{scheme}'")

    p = urlparse(f"postgresql://{rest}")
    qs = {k: v[0] for k, v in parse_qs(p.query or "").items() if v}
    dbname = (p.path or "").lstrip("/") or qs.get("dbname")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    return {
        "host": p.hostname or DB_HOST,
        "port": p.port or DB_PORT,
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "sslmode": qs.get("sslmode", DB_SSLMODE),
    }

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    return {
        "host": DB_HOST,
        "port": DB_PORT,
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": DB_SSLMODE,
    }

def _connection_kwargs() -> dict:
    kwargs = None
    if DATABASE_URL:
        try:
            kwargs = _url_kwargs(DATABASE_URL)
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)
    if kwargs is None:
        kwargs = _tcp_kwargs()
    kwargs.update(connect_timeout=10, options="-c search_path=public")
    print(f"[DB] TCP -> {kwargs['host']}:{kwargs['port']}/{kwargs['dbname']}", flush=True)
    return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = make_conninfo(**_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=DB_POOL_MIN, max_size=DB_POOL_MAX, open=True)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    # connection goes back to the pool (rolled back on error) when the block exits
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

def batch(statements: Iterable[Tuple[str, Optional[Sequence[Any]]]]):
    """Run statements in order on one connection; one commit, all or nothing."""
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            for q, params in statements:
                cur.execute(q, params or ())
        conn.commit()

# =============================================================================
# Response headers & health
# =============================================================================
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

@app.after_request
def add_security_headers(resp):
    for k, v in SECURITY_HEADERS.items():
        resp.headers.setdefault(k, v)
    return resp

@app.get(f"{BASE_PATH}/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        print(f"[DB] healthz failed: {type(e).__name__}: {e}", flush=True)
        return ("db-fail", 500)

# =============================================================================
# Blueprints
# =============================================================================
_store_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "batch": batch,
    "content_store": content_store,
}
app.register_blueprint(create_exam_blueprint(BASE_PATH, dict(_store_deps), name="exam"))
app.register_blueprint(create_admin_blueprint(BASE_PATH, {
    **_store_deps,
    "tokens": tokens,
    "gate": gate,
}, name="admin"))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
