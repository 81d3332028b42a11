"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (accounts,
entrance questions, scores, notes, chat, PDFs, tips, activity,
notifications, schedule). Repositories return SQLModel objects and
perform commits/refreshes where appropriate.
"""

from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import func
from sqlmodel import Session, col, delete, select

from . import models


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        """Add `obj` to the session, commit and return the refreshed row."""
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj


class StudentRepository(_Repository):
    """CRUD operations for `Student` objects."""

    def create(self, student: models.Student) -> models.Student:
        """Persist a new student and return the managed instance."""
        return self.save(student)

    def get(self, student_id: int) -> Optional[models.Student]:
        return self.session.get(models.Student, student_id)

    def get_by_email(self, email: str) -> Optional[models.Student]:
        """Return a `Student` by (lower-case) email or `None` if not found."""
        stmt = select(models.Student).where(models.Student.email == email.lower())
        return self.session.exec(stmt).first()


class TeacherRepository(_Repository):
    """CRUD operations for `Teacher` objects."""

    def create(self, teacher: models.Teacher) -> models.Teacher:
        return self.save(teacher)

    def get(self, teacher_id: int) -> Optional[models.Teacher]:
        return self.session.get(models.Teacher, teacher_id)

    def get_by_email(self, email: str) -> Optional[models.Teacher]:
        stmt = select(models.Teacher).where(models.Teacher.email == email.lower())
        return self.session.exec(stmt).first()

    def get_many(self, teacher_ids: Iterable[int]) -> Dict[int, models.Teacher]:
        ids = set(teacher_ids)
        if not ids:
            return {}
        stmt = select(models.Teacher).where(col(models.Teacher.id).in_(ids))
        return {t.id: t for t in self.session.exec(stmt).all()}


class PasswordResetRepository(_Repository):
    """Storage for hashed password reset tokens."""

    def get_by_hash(self, token_hash: str) -> Optional[models.PasswordResetToken]:
        stmt = select(models.PasswordResetToken).where(models.PasswordResetToken.token_hash == token_hash)
        return self.session.exec(stmt).first()

    def invalidate_for_user(self, user_id: int, user_role: str, used_at) -> None:
        """Mark every unused token of the account as used."""
        stmt = select(models.PasswordResetToken).where(
            models.PasswordResetToken.user_id == user_id,
            models.PasswordResetToken.user_role == user_role,
            col(models.PasswordResetToken.used_at).is_(None),
        )
        for token in self.session.exec(stmt).all():
            token.used_at = used_at
            self.session.add(token)
        self.session.commit()


class QuestionRepository(_Repository):
    """CRUD operations for `EntranceQuestion` and related options."""

    def create(self, question: models.EntranceQuestion, options: List[models.EntranceOption]) -> models.EntranceQuestion:
        """Create a question and attach provided options.

        The function commits the question first to obtain an id, then
        assigns that id to the options before committing them.
        """
        self.save(question)
        for position, option in enumerate(options):
            option.question_id = question.id
            option.position = position
            self.session.add(option)
        self.session.commit()
        self.session.refresh(question)
        return question

    def get(self, question_id: int) -> Optional[models.EntranceQuestion]:
        return self.session.get(models.EntranceQuestion, question_id)

    def list_for_exam(self, subject: str, year: int) -> List[models.EntranceQuestion]:
        """Questions of one exam, ordered by question number then id."""
        stmt = (
            select(models.EntranceQuestion)
            .where(
                func.lower(models.EntranceQuestion.subject) == subject.lower(),
                models.EntranceQuestion.year == year,
            )
            .order_by(
                col(models.EntranceQuestion.question_number).is_(None),
                models.EntranceQuestion.question_number,
                models.EntranceQuestion.id,
            )
        )
        return self.session.exec(stmt).all()

    def list_options(self, question_id: int) -> List[models.EntranceOption]:
        stmt = (
            select(models.EntranceOption)
            .where(models.EntranceOption.question_id == question_id)
            .order_by(models.EntranceOption.position)
        )
        return self.session.exec(stmt).all()

    def exists_by_text(self, subject: str, year: int, question_text: str) -> bool:
        """Return True if the exam already holds a question with this text."""
        stmt = select(models.EntranceQuestion.id).where(
            func.lower(models.EntranceQuestion.subject) == subject.lower(),
            models.EntranceQuestion.year == year,
            models.EntranceQuestion.question_text == question_text,
        )
        return self.session.exec(stmt).first() is not None

    def exists_by_number(self, subject: str, year: int, question_number: int) -> bool:
        """Return True if the exam already holds this question number."""
        stmt = select(models.EntranceQuestion.id).where(
            func.lower(models.EntranceQuestion.subject) == subject.lower(),
            models.EntranceQuestion.year == year,
            models.EntranceQuestion.question_number == question_number,
        )
        return self.session.exec(stmt).first() is not None

    def years_by_subject(self, subjects: List[str]) -> Dict[str, List[int]]:
        """Map each subject to the ascending list of years that have questions."""
        lowered = {s.lower(): s for s in subjects}
        stmt = select(models.EntranceQuestion.subject, models.EntranceQuestion.year).distinct()
        out: Dict[str, Set[int]] = {s: set() for s in subjects}
        for subject, year in self.session.exec(stmt).all():
            key = lowered.get((subject or "").lower())
            if key:
                out[key].add(year)
        return {s: sorted(years) for s, years in out.items()}


class ScoreRepository(_Repository):
    """Persist exam scores and read a student's history."""

    def list_for_student(self, student_id: int, subject: Optional[str] = None) -> List[models.ExamScore]:
        stmt = select(models.ExamScore).where(models.ExamScore.student_id == student_id)
        if subject:
            stmt = stmt.where(func.lower(models.ExamScore.subject) == subject.lower())
        stmt = stmt.order_by(col(models.ExamScore.submitted_at).desc(), col(models.ExamScore.id).desc())
        return self.session.exec(stmt).all()


class NoteRepository(_Repository):
    def list(self, subject: Optional[str] = None, grade: Optional[str] = None) -> List[models.Note]:
        stmt = select(models.Note)
        if subject:
            stmt = stmt.where(func.lower(models.Note.subject) == subject.lower())
        if grade:
            stmt = stmt.where(models.Note.grade == grade)
        stmt = stmt.order_by(models.Note.chapter, models.Note.id)
        return self.session.exec(stmt).all()


class NoteProgressRepository(_Repository):
    def get_topic(self, student_id: int, subject: str, grade: str, topic_id: str) -> Optional[models.NoteProgress]:
        stmt = select(models.NoteProgress).where(
            models.NoteProgress.student_id == student_id,
            models.NoteProgress.subject == subject,
            models.NoteProgress.grade == grade,
            models.NoteProgress.topic_id == topic_id,
        )
        return self.session.exec(stmt).first()

    def list_for_student(self, student_id: int, subject: Optional[str], grade: Optional[str]) -> List[models.NoteProgress]:
        stmt = select(models.NoteProgress).where(models.NoteProgress.student_id == student_id)
        if subject:
            stmt = stmt.where(models.NoteProgress.subject == subject.lower())
        if grade:
            stmt = stmt.where(models.NoteProgress.grade == grade)
        return self.session.exec(stmt.order_by(models.NoteProgress.id)).all()


class ChatRepository(_Repository):
    """Rooms, memberships, moderators and messages."""

    def get_room(self, room_id: int) -> Optional[models.ChatRoom]:
        return self.session.get(models.ChatRoom, room_id)

    def list_active_rooms(self) -> List[models.ChatRoom]:
        stmt = select(models.ChatRoom).where(models.ChatRoom.is_active == True).order_by(models.ChatRoom.id)  # noqa: E712
        return self.session.exec(stmt).all()

    def get_participant(self, room_id: int, user_id: int, user_role: str) -> Optional[models.ChatParticipant]:
        stmt = select(models.ChatParticipant).where(
            models.ChatParticipant.room_id == room_id,
            models.ChatParticipant.user_id == user_id,
            models.ChatParticipant.user_role == user_role,
        )
        return self.session.exec(stmt).first()

    def list_participants(self, room_id: int) -> List[models.ChatParticipant]:
        stmt = (
            select(models.ChatParticipant)
            .where(models.ChatParticipant.room_id == room_id)
            .order_by(models.ChatParticipant.joined_at, models.ChatParticipant.id)
        )
        return self.session.exec(stmt).all()

    def participant_counts(self) -> Dict[int, int]:
        stmt = select(models.ChatParticipant.room_id, func.count(models.ChatParticipant.id)).group_by(
            models.ChatParticipant.room_id
        )
        return {room_id: count for room_id, count in self.session.exec(stmt).all()}

    def joined_room_ids(self, user_id: int, user_role: str) -> Set[int]:
        stmt = select(models.ChatParticipant.room_id).where(
            models.ChatParticipant.user_id == user_id,
            models.ChatParticipant.user_role == user_role,
        )
        return set(self.session.exec(stmt).all())

    def remove(self, obj) -> None:
        self.session.delete(obj)
        self.session.commit()

    def is_moderator(self, room_id: int, teacher_id: int) -> bool:
        stmt = select(models.ChatModerator.id).where(
            models.ChatModerator.room_id == room_id,
            models.ChatModerator.teacher_id == teacher_id,
        )
        return self.session.exec(stmt).first() is not None

    def list_moderator_ids(self, room_id: int) -> List[int]:
        stmt = select(models.ChatModerator.teacher_id).where(models.ChatModerator.room_id == room_id)
        return list(self.session.exec(stmt.order_by(models.ChatModerator.id)).all())

    def get_message(self, message_id: int) -> Optional[models.Message]:
        return self.session.get(models.Message, message_id)

    def list_messages(self, room_id: int) -> List[models.Message]:
        """Non-deleted messages of a room in insertion order."""
        stmt = (
            select(models.Message)
            .where(models.Message.room_id == room_id, models.Message.is_deleted == False)  # noqa: E712
            .order_by(models.Message.created_at, models.Message.id)
        )
        return self.session.exec(stmt).all()


class PDFRepository(_Repository):
    """Study material rows and per-student download tracking."""

    def get(self, pdf_id: int) -> Optional[models.PDFDocument]:
        return self.session.get(models.PDFDocument, pdf_id)

    def list(self, subject: Optional[str] = None) -> List[models.PDFDocument]:
        stmt = select(models.PDFDocument)
        if subject:
            stmt = stmt.where(func.lower(models.PDFDocument.subject) == subject.lower())
        return self.session.exec(stmt.order_by(col(models.PDFDocument.created_at).desc(), col(models.PDFDocument.id).desc())).all()

    def record_download(self, pdf_id: int, student_id: int, when) -> models.PDFDownload:
        """Upsert the (pdf, student) download row with a fresh timestamp."""
        stmt = select(models.PDFDownload).where(
            models.PDFDownload.pdf_id == pdf_id,
            models.PDFDownload.student_id == student_id,
        )
        row = self.session.exec(stmt).first()
        if row:
            row.downloaded_at = when
        else:
            row = models.PDFDownload(pdf_id=pdf_id, student_id=student_id, downloaded_at=when)
        return self.save(row)

    def downloads_for_student(self, student_id: int) -> Dict[int, object]:
        stmt = select(models.PDFDownload).where(models.PDFDownload.student_id == student_id)
        return {d.pdf_id: d.downloaded_at for d in self.session.exec(stmt).all()}

    def delete_downloads(self, pdf_id: int) -> int:
        result = self.session.exec(delete(models.PDFDownload).where(models.PDFDownload.pdf_id == pdf_id))
        self.session.commit()
        return result.rowcount

    def delete(self, pdf: models.PDFDocument) -> None:
        self.session.delete(pdf)
        self.session.commit()


class TipRepository(_Repository):
    """Study tips and their reactions."""

    def get(self, tip_id: int) -> Optional[models.StudyTip]:
        return self.session.get(models.StudyTip, tip_id)

    def list(self, subject: Optional[str] = None) -> List[models.StudyTip]:
        stmt = select(models.StudyTip)
        if subject:
            stmt = stmt.where(func.lower(models.StudyTip.subject) == subject.lower())
        return self.session.exec(stmt.order_by(col(models.StudyTip.created_at).desc(), col(models.StudyTip.id).desc())).all()

    def get_reaction(self, tip_id: int, student_id: int) -> Optional[models.TipReaction]:
        stmt = select(models.TipReaction).where(
            models.TipReaction.tip_id == tip_id,
            models.TipReaction.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def reactions_for_student(self, student_id: int) -> Dict[int, str]:
        stmt = select(models.TipReaction).where(models.TipReaction.student_id == student_id)
        return {r.tip_id: r.reaction for r in self.session.exec(stmt).all()}

    def delete(self, tip: models.StudyTip) -> None:
        self.session.exec(delete(models.TipReaction).where(models.TipReaction.tip_id == tip.id))
        self.session.delete(tip)
        self.session.commit()


class ActivityRepository(_Repository):
    def list_for_user(self, user_id: int, user_role: str) -> List[models.UserActivity]:
        """All activities of a user, newest first."""
        stmt = (
            select(models.UserActivity)
            .where(models.UserActivity.user_id == user_id, models.UserActivity.user_role == user_role)
            .order_by(col(models.UserActivity.created_at).desc(), col(models.UserActivity.id).desc())
        )
        return self.session.exec(stmt).all()


class RecentActivityRepository(_Repository):
    def list_for_teacher(self, teacher_id: int, limit: int = 20) -> List[models.RecentActivity]:
        stmt = (
            select(models.RecentActivity)
            .where(models.RecentActivity.teacher_id == teacher_id)
            .order_by(col(models.RecentActivity.created_at).desc(), col(models.RecentActivity.id).desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def delete_for_resource(self, resource_id: int, activity_types: Iterable[str]) -> int:
        result = self.session.exec(
            delete(models.RecentActivity).where(
                models.RecentActivity.resource_id == resource_id,
                col(models.RecentActivity.activity_type).in_(list(activity_types)),
            )
        )
        self.session.commit()
        return result.rowcount


class NotificationRepository(_Repository):
    def get(self, notification_id: int) -> Optional[models.Notification]:
        return self.session.get(models.Notification, notification_id)

    def list_all(self) -> List[models.Notification]:
        stmt = select(models.Notification).order_by(
            col(models.Notification.created_at).desc(), col(models.Notification.id).desc()
        )
        return self.session.exec(stmt).all()

    def read_ids(self, user_id: int, user_role: str) -> Set[int]:
        stmt = select(models.NotificationRead.notification_id).where(
            models.NotificationRead.user_id == user_id,
            models.NotificationRead.user_role == user_role,
        )
        return set(self.session.exec(stmt).all())

    def delete_for_item(self, item_id: int, item_type: str) -> int:
        stmt = select(models.Notification.id).where(
            models.Notification.related_item_id == item_id,
            models.Notification.related_item_type == item_type,
        )
        ids = list(self.session.exec(stmt).all())
        if ids:
            self.session.exec(delete(models.NotificationRead).where(col(models.NotificationRead.notification_id).in_(ids)))
            self.session.exec(delete(models.Notification).where(col(models.Notification.id).in_(ids)))
            self.session.commit()
        return len(ids)


class ScheduleRepository(_Repository):
    def get(self, entry_id: int) -> Optional[models.ScheduleEntry]:
        return self.session.get(models.ScheduleEntry, entry_id)

    def get_slot(self, student_id: int, day: str, start_hour: int) -> Optional[models.ScheduleEntry]:
        stmt = select(models.ScheduleEntry).where(
            models.ScheduleEntry.student_id == student_id,
            models.ScheduleEntry.day == day,
            models.ScheduleEntry.start_hour == start_hour,
        )
        return self.session.exec(stmt).first()

    def list_for_student(self, student_id: int, day: Optional[str] = None) -> List[models.ScheduleEntry]:
        stmt = select(models.ScheduleEntry).where(models.ScheduleEntry.student_id == student_id)
        if day:
            stmt = stmt.where(models.ScheduleEntry.day == day)
        return self.session.exec(stmt).all()

    def delete(self, entry: models.ScheduleEntry) -> None:
        self.session.delete(entry)
        self.session.commit()
