"""
Request and claims models.

Every JSON body is validated here before it reaches business code; a
pydantic ValidationError is reported to the client as `malformed`.
Unknown fields are ignored, so a client-sent `score` or `total` never
survives parsing.
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import Malformed

ROLE_TEACHER = "teacher"
ROLE_SUPER_ADMIN = "super_admin"
ROLES = (ROLE_TEACHER, ROLE_SUPER_ADMIN)

Role = Literal["teacher", "super_admin"]
ChoiceId = Union[int, float, str, None]


class _Body(BaseModel):
    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
        populate_by_name=True,
    )


class Claims(BaseModel):
    """Identity carried inside a token. Never persisted."""
    model_config = ConfigDict(extra="ignore")

    subject_id: int
    username: str
    role: Role
    name: str = ""
    expiry: Optional[datetime] = None


# ------------------------------ auth -----------------------------------------
class LoginRequest(_Body):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=100)


class NewUserRequest(_Body):
    """First super_admin (setup) and teacher accounts."""
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=100)


class PasswordChangeRequest(_Body):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str = Field(..., min_length=6, max_length=100)


# ------------------------------ admin ----------------------------------------
class IdRequest(_Body):
    id: int


class ToggleRequest(_Body):
    id: int
    is_active: bool


class ConfigAddRequest(_Body):
    type: Literal["class", "section"]
    value: str = Field(..., min_length=1, max_length=50)


class ExamSaveRequest(_Body):
    id: Optional[int] = None
    title: str = Field(..., min_length=1)
    teacher_id: Optional[int] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class QuestionChoice(_Body):
    id: Union[int, float, str]
    text: str = Field("", max_length=1000)
    isCorrect: bool = False


# ------------------------------ students -------------------------------------
class SchoolIdRequest(_Body):
    school_id: str = Field(..., min_length=1, max_length=64)


class CheckRequest(_Body):
    exam_id: int
    school_id: str = Field(..., min_length=1, max_length=64)


class StudentProfile(_Body):
    school_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    roll: str = Field("", max_length=32)
    class_: Optional[str] = Field(None, alias="class", max_length=50)
    section: Optional[str] = Field(None, max_length=50)

    @field_validator("class_", "section")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def profile_fields(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "roll": self.roll, "class": self.class_, "section": self.section}


class SubmissionRequest(_Body):
    link_id: str = Field(..., min_length=1, max_length=64)
    student: StudentProfile
    answers: Dict[str, ChoiceId] = Field(default_factory=dict)


def parse_body(model, data: Any):
    """Validate `data` into `model`, raising Malformed with the first problem."""
    if not isinstance(data, dict):
        raise Malformed("Expected a JSON object body.")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = (e.errors() or [{}])[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise Malformed(f"Invalid field '{where}': {first.get('msg', 'invalid')}") from None
