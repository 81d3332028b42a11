"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table; cross-table references are plain integer
foreign keys, with relationships declared where the code walks them.
"""

from typing import ClassVar, List, Optional
from datetime import datetime, timezone

from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Student(SQLModel, table=True):
    """A registered student.

    Fields:
    - `email`: unique login name, stored lower-case
    - `password_hash`: hashed password string (never store plaintext)
    - `stream`: curriculum track, `Natural` or `Social`
    - `your_goal`: target exam percentage chosen at signup
    """
    role: ClassVar[str] = "student"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    phone_number: str
    stream: str = Field(default="Natural", index=True)
    your_goal: int = 0
    profile_picture: Optional[str] = None
    status: str = "Active"
    level: str = "Student"
    created_at: datetime = Field(default_factory=utcnow)


class Teacher(SQLModel, table=True):
    """A registered teacher; `subject` limits what they may author."""
    role: ClassVar[str] = "teacher"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    subject: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)


class PasswordResetToken(SQLModel, table=True):
    """Single-use password reset token. Only the SHA-256 hash is stored."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    user_role: str
    token_hash: str = Field(index=True, unique=True)
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class EntranceQuestion(SQLModel, table=True):
    """A multiple-choice entrance exam question for a subject and year."""
    id: Optional[int] = Field(default=None, primary_key=True)
    subject: str = Field(index=True)
    year: int = Field(index=True)
    question_number: Optional[int] = Field(default=None, index=True)
    question_text: str
    explanation: Optional[str] = None
    correct_answer: str
    created_by: Optional[int] = Field(default=None, foreign_key="teacher.id")
    created_at: datetime = Field(default_factory=utcnow)
    options: List["EntranceOption"] = Relationship(
        back_populates="question",
        sa_relationship_kwargs={"order_by": "EntranceOption.position"},
    )


class EntranceOption(SQLModel, table=True):
    """One labelled option (`A`, `B`, ...) of an `EntranceQuestion`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key="entrancequestion.id", index=True)
    label: str
    option_text: str
    position: int = 0
    question: Optional[EntranceQuestion] = Relationship(back_populates="options")


class ExamScore(SQLModel, table=True):
    """A stored entrance exam result for a student."""
    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    subject: str = Field(index=True)
    year: int
    score: int
    total_questions: int
    percentage: float
    submitted_at: datetime = Field(default_factory=utcnow)


class Note(SQLModel, table=True):
    """A course note (topic) inside a chapter of a grade/subject."""
    id: Optional[int] = Field(default=None, primary_key=True)
    subject: str = Field(index=True)
    grade: str = Field(index=True)
    chapter: int = 1
    title: str
    description: str = ""
    created_by: Optional[int] = Field(default=None, foreign_key="teacher.id")
    created_at: datetime = Field(default_factory=utcnow)


class NoteProgress(SQLModel, table=True):
    """Per-student completion marker for a course topic."""
    __table_args__ = (UniqueConstraint("student_id", "subject", "grade", "topic_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    subject: str
    grade: str
    unit_id: str
    topic_id: str
    completed: bool = True
    updated_at: datetime = Field(default_factory=utcnow)


class ChatRoom(SQLModel, table=True):
    """A subject chat room created by a teacher."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: str = ""
    subject: Optional[str] = None
    created_by: int = Field(foreign_key="teacher.id")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class ChatParticipant(SQLModel, table=True):
    """Membership of a student or teacher in a `ChatRoom`."""
    __table_args__ = (UniqueConstraint("room_id", "user_id", "user_role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="chatroom.id", index=True)
    user_id: int
    user_role: str
    joined_at: datetime = Field(default_factory=utcnow)


class ChatModerator(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("room_id", "teacher_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="chatroom.id", index=True)
    teacher_id: int = Field(foreign_key="teacher.id")


class Message(SQLModel, table=True):
    """A chat message. Moderated messages are soft-deleted."""
    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="chatroom.id", index=True)
    sender_id: int
    sender_role: str
    content: str = ""
    image_url: Optional[str] = None
    is_deleted: bool = False
    is_moderated: bool = False
    moderated_by: Optional[int] = Field(default=None, foreign_key="teacher.id")
    created_at: datetime = Field(default_factory=utcnow, index=True)


class PDFDocument(SQLModel, table=True):
    """An uploaded study material PDF."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    subject: str = Field(index=True)
    uploaded_by: int = Field(foreign_key="teacher.id")
    file_url: str
    file_path: str
    page_count: Optional[int] = None
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class PDFDownload(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("pdf_id", "student_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    pdf_id: int = Field(foreign_key="pdfdocument.id", index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    downloaded_at: datetime = Field(default_factory=utcnow)


class StudyTip(SQLModel, table=True):
    """A teacher-authored study tip with like/dislike counters."""
    id: Optional[int] = Field(default=None, primary_key=True)
    category: str
    level: str
    title: str
    description: str
    subject: str = Field(index=True)
    created_by: int = Field(foreign_key="teacher.id")
    likes: int = 0
    dislikes: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TipReaction(SQLModel, table=True):
    """A student's like or dislike of a `StudyTip` (one per student)."""
    __table_args__ = (UniqueConstraint("tip_id", "student_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tip_id: int = Field(foreign_key="studytip.id", index=True)
    student_id: int = Field(foreign_key="student.id")
    reaction: str


class UserActivity(SQLModel, table=True):
    """A resource access event used for "continue where you left off"."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    user_role: str
    activity_type: str = Field(index=True)
    resource_id: str
    resource_type: str
    details: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)


class RecentActivity(SQLModel, table=True):
    """Teacher-side audit trail (uploads, tips, rooms)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    teacher_id: int = Field(foreign_key="teacher.id", index=True)
    activity_type: str
    description: str
    resource_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    message: str
    type: str
    subject: Optional[str] = Field(default=None, index=True)
    related_item_id: Optional[int] = Field(default=None, index=True)
    related_item_type: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class NotificationRead(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("notification_id", "user_id", "user_role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    notification_id: int = Field(foreign_key="notification.id", index=True)
    user_id: int
    user_role: str
    read_at: datetime = Field(default_factory=utcnow)


class ScheduleEntry(SQLModel, table=True):
    """A weekly study-plan slot for a student."""
    __table_args__ = (UniqueConstraint("student_id", "day", "start_hour"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    day: str
    start_hour: int
    end_hour: int
    subject: str
    created_at: datetime = Field(default_factory=utcnow)
