"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests. Field aliases follow the camelCase names
the mobile client sends; snake_case names are accepted too.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import catalog


class _In(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


def _check_email(value: str) -> str:
    if not catalog.EMAIL_RE.match(value or ""):
        raise ValueError("Email is invalid")
    return value.lower()


def _check_password(value: str) -> str:
    if len(value or "") < 8:
        raise ValueError("Password must be at least 8 characters")
    return value


def _check_phone(value: str) -> str:
    if value is not None and not catalog.PHONE_RE.match(value):
        raise ValueError("Phone number must be in format +251xxxxxxxxx")
    return value


def _check_stream(value: str) -> str:
    if value is None:
        return value
    for stream in catalog.STREAMS:
        if stream.lower() == value.lower():
            return stream
    raise ValueError(f"stream must be one of {', '.join(catalog.STREAMS)}")


def _check_goal(value: int) -> int:
    if value is not None and value <= 0:
        raise ValueError("Your goal must be a positive number")
    return value


class SignupIn(_In):
    """Student registration payload."""
    name: str = Field(min_length=1)
    email: str
    password: str
    confirm_password: Optional[str] = Field(default=None, alias="confirmPassword")
    phone_number: str = Field(alias="phoneNumber")
    stream: str
    your_goal: int = Field(alias="yourGoal")
    profile_picture: Optional[str] = Field(default=None, alias="profilePicture")

    validate_email = field_validator("email")(_check_email)
    validate_password = field_validator("password")(_check_password)
    validate_phone = field_validator("phone_number")(_check_phone)
    validate_stream = field_validator("stream")(_check_stream)
    validate_goal = field_validator("your_goal")(_check_goal)

    @model_validator(mode="after")
    def validate_passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class TeacherSignupIn(_In):
    name: str = Field(min_length=1)
    email: str
    password: str
    subject: str

    validate_email = field_validator("email")(_check_email)
    validate_password = field_validator("password")(_check_password)

    @field_validator("subject")
    @classmethod
    def validate_known_subject(cls, value: str) -> str:
        subject = catalog.canonical_subject(value)
        if not subject:
            raise ValueError("unknown subject")
        return subject


class LoginIn(_In):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def validate_lower(cls, value: str) -> str:
        return value.lower()


class PasswordResetRequestIn(_In):
    email: str

    @field_validator("email")
    @classmethod
    def validate_lower(cls, value: str) -> str:
        return value.lower()


class PasswordResetIn(_In):
    password: str

    validate_password = field_validator("password")(_check_password)


class StudentUpdateIn(_In):
    """Partial profile update; omitted fields are left unchanged."""
    name: Optional[str] = Field(default=None, min_length=1)
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    stream: Optional[str] = None
    your_goal: Optional[int] = Field(default=None, alias="yourGoal")

    validate_phone = field_validator("phone_number")(_check_phone)
    validate_stream = field_validator("stream")(_check_stream)
    validate_goal = field_validator("your_goal")(_check_goal)


class ScoreIn(_In):
    """A client-scored entrance exam result."""
    student: Optional[Union[int, str]] = None
    subject: str = Field(min_length=1)
    year: int
    score: int = Field(ge=0)
    total_questions: int = Field(gt=0, alias="totalQuestions")
    submitted_at: Optional[datetime] = Field(default=None, alias="submittedAt")

    @model_validator(mode="after")
    def validate_score_in_range(self):
        if self.score > self.total_questions:
            raise ValueError("score cannot exceed totalQuestions")
        return self


class GradeItemIn(_In):
    question_id: int = Field(alias="questionId")
    selected: Optional[Union[int, str]] = None


class GradeIn(_In):
    answers: List[GradeItemIn]


class QuestionIn(_In):
    """Single entrance question authored by a teacher."""
    subject: str
    year: int
    question_number: Optional[int] = Field(default=None, alias="questionNumber")
    question_text: str = Field(min_length=1, alias="questionText")
    options: List[str] = Field(min_length=2)
    correct_answer: str = Field(min_length=1, alias="correctAnswer")
    explanation: Optional[str] = None


class NoteIn(_In):
    subject: str = Field(min_length=1)
    grade: str
    chapter: int = Field(default=1, ge=1)
    title: str = Field(min_length=1)
    description: str = ""

    @field_validator("grade", mode="before")
    @classmethod
    def validate_grade(cls, value) -> str:
        return catalog.normalize_grade(value)


class NoteProgressIn(_In):
    grade: str
    subject: str = Field(min_length=1)
    unit_id: Union[str, int] = Field(alias="unitId")
    topic_id: Union[str, int] = Field(alias="topicId")
    completed: bool = True

    @field_validator("grade", mode="before")
    @classmethod
    def validate_grade(cls, value) -> str:
        return catalog.normalize_grade(value)


class ChatRoomIn(_In):
    name: str = Field(min_length=1)
    description: str = ""
    subject: Optional[str] = None


class ModeratorIn(_In):
    teacher_id: int = Field(alias="teacherId")


class MessageIn(_In):
    room_id: int = Field(alias="roomId")
    content: Optional[str] = ""


class StudyTipIn(_In):
    category: str
    level: str
    title: str
    description: str
    subject: str


class StudyTipUpdateIn(_In):
    """Either a reaction (`action`) or a full content update."""
    action: Optional[str] = None
    category: Optional[str] = None
    level: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None


class ActivityIn(_In):
    activity_type: Optional[str] = Field(default=None, alias="activityType")
    resource_id: Optional[Union[str, int]] = Field(default=None, alias="resourceId")
    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    metadata: Optional[Dict[str, Any]] = None


class ScheduleIn(_In):
    day: str
    start_hour: int = Field(alias="startHour")
    end_hour: int = Field(alias="endHour")
    subject: str = Field(min_length=1)

    @field_validator("day")
    @classmethod
    def validate_day(cls, value: str) -> str:
        for day in catalog.DAYS:
            if day.lower() == value.lower():
                return day
        raise ValueError("day must be a weekday name")

    @model_validator(mode="after")
    def validate_hours(self):
        if not (catalog.FIRST_HOUR <= self.start_hour < self.end_hour <= catalog.LAST_HOUR):
            raise ValueError(
                f"hours must satisfy {catalog.FIRST_HOUR} <= startHour < endHour <= {catalog.LAST_HOUR}"
            )
        return self
