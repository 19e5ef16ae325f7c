import sys
import threading
from pathlib import Path

import pytest
from psycopg.errors import UniqueViolation

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fakedb import FakeDB  # noqa: E402
from identity import IdentityResolver  # noqa: E402

PROFILE = {"name": "Amina", "roll": "12", "class": "7", "section": "B"}


def _resolver(db):
    return IdentityResolver({
        "fetch_one": db.fetch_one,
        "execute": db.execute,
        "execute_returning": db.execute_returning,
    })


def test_find_unknown_school_id_is_none():
    assert _resolver(FakeDB()).find("S-1") is None


def test_first_resolve_creates_student():
    db = FakeDB()
    sid = _resolver(db).resolve_or_create("S-1", PROFILE)
    assert list(db.students) == [sid]
    assert db.students[sid]["name"] == "Amina"
    assert db.students[sid]["section"] == "B"


def test_repeat_resolve_reuses_row_and_overwrites_profile():
    db = FakeDB()
    resolver = _resolver(db)
    first = resolver.resolve_or_create("S-1", PROFILE)
    second = resolver.resolve_or_create("S-1", {"name": "Amina K", "roll": "13", "class": "", "section": None})
    assert first == second
    assert len(db.students) == 1
    row = db.students[first]
    assert (row["name"], row["roll"], row["class"], row["section"]) == ("Amina K", "13", None, None)


def test_concurrent_first_resolve_yields_one_row():
    db = FakeDB()
    db.insert_barrier = threading.Barrier(2)
    resolver = _resolver(db)
    results, errors = [], []

    def worker():
        try:
            results.append(resolver.resolve_or_create("S-new", PROFILE))
        except Exception as e:  # surfaced through the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert len(results) == 2 and results[0] == results[1]
    assert len(db.students) == 1


def test_unique_violation_without_row_propagates():
    class VanishingDB(FakeDB):
        def execute_returning(self, sql, params=()):
            raise UniqueViolation("duplicate key value violates unique constraint")

    db = VanishingDB()
    with pytest.raises(UniqueViolation):
        _resolver(db).resolve_or_create("S-ghost", PROFILE)
