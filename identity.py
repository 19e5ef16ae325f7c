# identity.py
"""
Find-or-create for students keyed by their school-assigned ID.

There is no login step for students: whoever holds a school_id string is
trusted as that student, and the latest submitted profile overwrites the
stored one (last write wins, no versioning).
"""
from typing import Any, Callable, Dict, Optional

from psycopg.errors import UniqueViolation


class IdentityResolver:
    """
    deps:
      - fetch_one(sql, params) -> dict | None
      - execute(sql, params)
      - execute_returning(sql, params) -> list[dict]
    """

    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]

    def find(self, school_id: str) -> Optional[int]:
        row = self.fetch_one("SELECT id FROM students WHERE school_id = %s;", (school_id,))
        return int(row["id"]) if row else None

    def _insert(self, school_id: str, profile: Dict[str, Any]) -> int:
        rows = self.execute_returning("""
            INSERT INTO students (school_id, name, roll, class, section)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id;
        """, (school_id, profile.get("name"), profile.get("roll"),
              profile.get("class") or None, profile.get("section") or None))
        return int(rows[0]["id"])

    def resolve_or_create(self, school_id: str, profile: Dict[str, Any]) -> int:
        """Stable student id for `school_id`; safe under concurrent first submissions."""
        student_id = self.find(school_id)
        if student_id is None:
            try:
                student_id = self._insert(school_id, profile)
            except UniqueViolation:
                # another request created the row between our read and insert
                student_id = self.find(school_id)
                if student_id is None:
                    raise
                print(f"[identity] insert raced for school_id={school_id!r}; reusing id={student_id}", flush=True)

        self.execute("""
            UPDATE students
               SET name = %s, roll = %s, class = %s, section = %s
             WHERE id = %s;
        """, (profile.get("name"), profile.get("roll"),
              profile.get("class") or None, profile.get("section") or None, student_id))
        return student_id
