"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
parsers and storage. Services perform validation, execute domain rules,
persist aggregates via repositories and return JSON-ready dictionaries.
Rule violations are raised as the typed HTTP exceptions in
`ethioace.exceptions` so controllers can stay thin.
"""

import hashlib
import logging
import secrets
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import jwt
from fastapi import UploadFile
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import catalog, models, repositories, schemas
from .config import settings
from .exceptions import (
    BadRequestException,
    ConflictException,
    CredentialsException,
    ForbiddenException,
    NotFoundException,
)
from .utils import storage
from .utils.answer_keys import load_answer_key
from .utils.exam_loader import exam_dir, find_exam_files, list_exam_folders
from .utils.parsers import parse_file_to_questions, resolve_correct

logger = logging.getLogger("ethioace.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime as ISO-8601 UTC. SQLite hands back naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _aware(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def best_effort(session: Session, label: str, fn: Callable):
    """Run a side effect whose failure must not fail the request.

    Errors are logged with a traceback and the session is rolled back.
    """
    try:
        return fn()
    except Exception:
        logger.exception("side effect failed: %s", label)
        session.rollback()
        return None


# --- serializers -----------------------------------------------------------

def teacher_out(t: models.Teacher) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "email": t.email,
        "subject": t.subject,
        "role": t.role,
        "createdAt": iso(t.created_at),
    }


def question_out(q: models.EntranceQuestion) -> dict:
    return {
        "id": q.id,
        "subject": q.subject,
        "year": q.year,
        "questionNumber": q.question_number,
        "question": {"text": q.question_text},
        "options": [{"label": o.label, "text": o.option_text} for o in q.options],
        "correctAnswer": q.correct_answer,
        "explanation": q.explanation,
    }


def score_out(s: models.ExamScore) -> dict:
    return {
        "id": s.id,
        "student": s.student_id,
        "subject": s.subject,
        "year": s.year,
        "score": s.score,
        "totalQuestions": s.total_questions,
        "percentage": s.percentage,
        "submittedAt": iso(s.submitted_at),
    }


def note_out(n: models.Note) -> dict:
    return {
        "id": n.id,
        "subject": n.subject,
        "grade": n.grade,
        "chapter": n.chapter,
        "title": n.title,
        "description": n.description,
    }


def progress_out(p: models.NoteProgress) -> dict:
    return {
        "id": p.id,
        "subject": p.subject,
        "grade": p.grade,
        "unitId": p.unit_id,
        "topicId": p.topic_id,
        "completed": p.completed,
        "updatedAt": iso(p.updated_at),
    }


def activity_out(a: models.UserActivity) -> dict:
    return {
        "id": a.id,
        "userId": a.user_id,
        "role": a.user_role,
        "activityType": a.activity_type,
        "resourceId": a.resource_id,
        "resourceType": a.resource_type,
        "metadata": a.details or {},
        "createdAt": iso(a.created_at),
    }


def recent_activity_out(a: models.RecentActivity) -> dict:
    return {
        "id": a.id,
        "activityType": a.activity_type,
        "description": a.description,
        "resourceId": a.resource_id,
        "createdAt": iso(a.created_at),
    }


def schedule_out(e: models.ScheduleEntry) -> dict:
    return {
        "id": e.id,
        "day": e.day,
        "startHour": e.start_hour,
        "endHour": e.end_hour,
        "subject": e.subject,
    }


# --- accounts --------------------------------------------------------------

class AuthService:
    """Registration, credential checks and token issuing."""

    def __init__(self, session: Session):
        self.session = session
        self.students = repositories.StudentRepository(session)
        self.teachers = repositories.TeacherRepository(session)

    def email_in_use(self, email: str) -> bool:
        return bool(self.students.get_by_email(email) or self.teachers.get_by_email(email))

    def register_student(self, payload: schemas.SignupIn) -> models.Student:
        """Create a student with a hashed password. 409 when the email is taken."""
        if self.email_in_use(payload.email):
            raise ConflictException("Email already in use")
        student = models.Student(
            name=payload.name,
            email=payload.email,
            password_hash=PWD_CTX.hash(payload.password),
            phone_number=payload.phone_number,
            stream=payload.stream,
            your_goal=payload.your_goal,
            profile_picture=payload.profile_picture or None,
        )
        return self._persist(self.students, student)

    def register_teacher(self, payload: schemas.TeacherSignupIn) -> models.Teacher:
        if self.email_in_use(payload.email):
            raise ConflictException("Email already in use")
        teacher = models.Teacher(
            name=payload.name,
            email=payload.email,
            password_hash=PWD_CTX.hash(payload.password),
            subject=payload.subject,
        )
        return self._persist(self.teachers, teacher)

    def _persist(self, repo, account):
        try:
            return repo.create(account)
        except IntegrityError:
            self.session.rollback()
            raise ConflictException("Email already in use")

    def authenticate(self, email: str, password: str) -> Tuple[object, str]:
        """Verify credentials and return `(account, token)`.

        Students are looked up first, then teachers. Raises 401 when the
        account is unknown or the password does not match.
        """
        account = self.students.get_by_email(email) or self.teachers.get_by_email(email)
        if not account or not PWD_CTX.verify(password, account.password_hash):
            raise CredentialsException("Invalid email or password")
        return account, self.create_token(account)

    @staticmethod
    def create_token(account) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": account.id,
            "role": account.role,
            "email": account.email,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class PasswordResetService:
    """Single-use reset tokens. Only SHA-256 hashes are stored."""

    def __init__(self, session: Session):
        self.session = session
        self.tokens = repositories.PasswordResetRepository(session)
        self.students = repositories.StudentRepository(session)
        self.teachers = repositories.TeacherRepository(session)

    @staticmethod
    def _hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def request(self, email: str) -> Optional[str]:
        """Create a token for the account owning `email`.

        Returns the raw token, or `None` when no account matches. Older
        unused tokens of the account are invalidated.
        """
        account = self.students.get_by_email(email) or self.teachers.get_by_email(email)
        if not account:
            return None
        now = models.utcnow()
        self.tokens.invalidate_for_user(account.id, account.role, now)
        raw = secrets.token_urlsafe(32)
        self.tokens.save(models.PasswordResetToken(
            user_id=account.id,
            user_role=account.role,
            token_hash=self._hash(raw),
            expires_at=now + timedelta(minutes=settings.PASSWORD_RESET_TTL_MINUTES),
        ))
        return raw

    def _valid_row(self, token: str) -> Optional[models.PasswordResetToken]:
        row = self.tokens.get_by_hash(self._hash(token))
        if not row or row.used_at is not None:
            return None
        if _aware(row.expires_at) <= models.utcnow():
            return None
        return row

    def verify(self, token: str) -> bool:
        return self._valid_row(token) is not None

    def reset(self, token: str, new_password: str) -> None:
        row = self._valid_row(token)
        if row is None:
            raise BadRequestException("Invalid or expired token")
        repo = self.students if row.user_role == models.Student.role else self.teachers
        account = repo.get(row.user_id)
        if account is None:
            raise BadRequestException("Invalid or expired token")
        account.password_hash = PWD_CTX.hash(new_password)
        row.used_at = models.utcnow()
        self.session.add(account)
        self.session.add(row)
        self.session.commit()
        logger.info("password reset completed role=%s user_id=%s", row.user_role, row.user_id)


class StudentService:
    """Student profiles and their exam statistics."""

    def __init__(self, session: Session):
        self.session = session
        self.students = repositories.StudentRepository(session)
        self.scores = repositories.ScoreRepository(session)

    def stats(self, student: models.Student) -> dict:
        history = self.scores.list_for_student(student.id)
        percentages = [s.percentage for s in history]
        average = round(sum(percentages) / len(percentages), 2) if percentages else 0
        return {
            "examsTaken": len(history),
            "averageScore": average,
            "bestScore": max(percentages) if percentages else 0,
            "goalReached": average >= student.your_goal,
        }

    def profile(self, student: models.Student) -> dict:
        return {
            "id": student.id,
            "name": student.name,
            "email": student.email,
            "phoneNumber": student.phone_number,
            "stream": student.stream,
            "yourGoal": student.your_goal,
            "profilePicture": student.profile_picture,
            "status": student.status,
            "level": student.level,
            "role": student.role,
            "createdAt": iso(student.created_at),
            "stats": self.stats(student),
        }

    def _load(self, student_id: int) -> models.Student:
        student = self.students.get(student_id)
        if not student:
            raise NotFoundException("Student not found")
        return student

    def get_profile(self, viewer, student_id: int) -> dict:
        """Students may read only themselves; teachers may read anyone."""
        if viewer.role == models.Student.role and viewer.id != student_id:
            raise ForbiddenException("You can only view your own profile")
        return self.profile(self._load(student_id))

    def _own(self, viewer, student_id: int) -> models.Student:
        if viewer.role != models.Student.role or viewer.id != student_id:
            raise ForbiddenException("You can only update your own profile")
        return self._load(student_id)

    def update(self, viewer, student_id: int, payload: schemas.StudentUpdateIn) -> dict:
        student = self._own(viewer, student_id)
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        for field, value in changes.items():
            setattr(student, field, value)
        self.students.save(student)
        return self.profile(student)

    def set_profile_picture(self, viewer, student_id: int, image: UploadFile) -> dict:
        student = self._own(viewer, student_id)
        stored = storage.save_image(image, "profile-pictures")
        previous = student.profile_picture
        student.profile_picture = stored["url"]
        self.students.save(student)
        if previous and previous.startswith("/uploads/profile-pictures/"):
            name = previous.rsplit("/", 1)[-1]
            storage.delete_file(str(storage.bucket_path("profile-pictures") / name))
        return self.profile(student)


class TeacherService:
    def __init__(self, session: Session):
        self.session = session
        self.teachers = repositories.TeacherRepository(session)
        self.recent = repositories.RecentActivityRepository(session)

    def get_profile(self, teacher_id: int) -> dict:
        teacher = self.teachers.get(teacher_id)
        if not teacher:
            raise NotFoundException("Teacher not found")
        return teacher_out(teacher)

    def recent_activity(self, teacher: models.Teacher, limit: int = 20) -> List[dict]:
        limit = max(1, min(limit, 100))
        return [recent_activity_out(a) for a in self.recent.list_for_teacher(teacher.id, limit)]

    def record(self, teacher_id: int, activity_type: str, description: str, resource_id: Optional[int] = None):
        """Append a recent-activity row for the teacher dashboard (best-effort)."""
        row = models.RecentActivity(
            teacher_id=teacher_id,
            activity_type=activity_type,
            description=description,
            resource_id=resource_id,
        )
        return best_effort(self.session, f"recent activity {activity_type}", lambda: self.recent.save(row))


# --- entrance exams --------------------------------------------------------

class ExamService:
    """Entrance exam catalog, authoring and server-side grading."""

    def __init__(self, session: Session):
        self.session = session
        self.questions = repositories.QuestionRepository(session)
        self.scores = repositories.ScoreRepository(session)

    def subjects_for(self, user) -> dict:
        if user.role == models.Student.role:
            stream = user.stream
            subjects = catalog.exam_subjects_for_stream(stream)
        else:
            stream = None
            subjects = list(catalog.ALL_EXAM_SUBJECTS)
        years = self.questions.years_by_subject(subjects)
        return {"stream": stream, "subjects": [{"subject": s, "years": years[s]} for s in subjects]}

    def list_exam(self, subject: str, year: int) -> List[dict]:
        return [question_out(q) for q in self.questions.list_for_exam(subject, year)]

    def subject_or_400(self, subject: str) -> str:
        canonical = catalog.canonical_subject(subject)
        if not canonical:
            raise BadRequestException(f"Unknown subject: {subject}")
        return canonical

    def check_author(self, teacher: models.Teacher, subject: str) -> None:
        if teacher.subject.lower() != subject.lower():
            raise ForbiddenException("You can only manage content for your own subject")

    def create_question(self, teacher: models.Teacher, payload: schemas.QuestionIn) -> dict:
        subject = self.subject_or_400(payload.subject)
        self.check_author(teacher, subject)
        options = [o.strip() for o in payload.options]
        if any(not o for o in options):
            raise BadRequestException("Options must not be empty")
        correct = resolve_correct(payload.correct_answer, options)
        if not correct:
            raise BadRequestException("correctAnswer must be an option letter or option text")
        question = self._create(subject, payload.year, payload.question_number, payload.question_text,
                                options, correct, payload.explanation, teacher.id)
        return question_out(question)

    def _create(self, subject, year, number, text, options, correct, explanation, created_by):
        question = models.EntranceQuestion(
            subject=subject,
            year=year,
            question_number=number,
            question_text=text,
            explanation=explanation,
            correct_answer=correct,
            created_by=created_by,
        )
        rows = [
            models.EntranceOption(label=catalog.answer_letter(i), option_text=text)
            for i, text in enumerate(options)
        ]
        return self.questions.create(question, rows)

    def import_file(
        self,
        file_bytes: bytes,
        filename: str,
        subject: str,
        year: Optional[int] = None,
        created_by: Optional[int] = None,
        answer_key: Optional[Dict[int, str]] = None,
    ) -> dict:
        """Parse `filename` contents and create entrance questions.

        Returns `{created, skipped, errors}`. Items that fail validation are
        reported per index; duplicates (same text, or same question number,
        within the subject/year) are skipped. Raises `ValueError` when the
        file cannot be parsed at all.
        """
        subject = catalog.canonical_subject(subject) or subject
        try:
            parsed = parse_file_to_questions(file_bytes, filename)
        except ValueError:
            raise
        except Exception as exc:
            logger.warning("could not parse %s: %s", filename, exc)
            raise ValueError(f"Could not parse {filename}") from exc
        created = 0
        skipped = 0
        errors = []
        for idx, item in enumerate(parsed):
            item_year = item.get("year") or year
            number = item.get("question_number")
            correct = item.get("correct_answer")
            if not correct and answer_key and number is not None:
                correct = resolve_correct(answer_key.get(number), item.get("options") or [])
            try:
                self._validate_parsed_question(item, item_year, correct)
            except ValueError as e:
                errors.append({"index": idx, "error": str(e)})
                continue
            text = item["question_text"]
            if self.questions.exists_by_text(subject, item_year, text):
                skipped += 1
                continue
            if number is not None and self.questions.exists_by_number(subject, item_year, number):
                skipped += 1
                continue
            self._create(subject, item_year, number, text, item["options"], correct,
                         item.get("explanation"), created_by)
            created += 1
        logger.info("imported %s subject=%s created=%d skipped=%d errors=%d",
                    filename, subject, created, skipped, len(errors))
        return {"created": created, "skipped": skipped, "errors": errors}

    def _validate_parsed_question(self, item: dict, year: Optional[int], correct: Optional[str]):
        """Raise ValueError describing the first problem with a parsed item."""
        text = item.get("question_text")
        if not text or not isinstance(text, str) or not text.strip():
            raise ValueError("missing or empty question text")
        options = item.get("options")
        if not isinstance(options, list) or len(options) < 2:
            raise ValueError("at least two options are required")
        if any(not isinstance(o, str) or not o.strip() for o in options):
            raise ValueError("options must be non-empty text")
        if year is None:
            raise ValueError("exam year missing")
        if not correct:
            raise ValueError("correct answer missing or out of range")

    def import_from_exams(self, subject: Optional[str], year: Optional[int], created_by: Optional[int] = None) -> dict:
        """Import every supported file under `EXAMS_DIR/<Subject>/<year>/`."""
        root: Path = settings.EXAMS_DIR
        if not root.exists():
            raise BadRequestException(f"Exams folder not found at {root}")
        if subject and year:
            folder = exam_dir(root, subject, year)
            if folder is None:
                raise BadRequestException(f"No exam folder for {subject} {year}")
            folders = [(folder.parent.name, year, folder)]
        else:
            folders = [
                f for f in list_exam_folders(root)
                if (not subject or f[0].lower() == subject.lower()) and (not year or f[1] == year)
            ]
            if not folders:
                raise BadRequestException("No matching exam folders found")
        details = []
        total_created = 0
        total_skipped = 0
        imported = 0
        for folder_subject, folder_year, folder in folders:
            key = load_answer_key(folder)
            for f in find_exam_files(root, folder_subject, folder_year):
                imported += 1
                try:
                    result = self.import_file(f.read_bytes(), f.name, folder_subject, folder_year,
                                              created_by=created_by, answer_key=key)
                except ValueError as e:
                    details.append({"file": str(f.relative_to(root)), "error": str(e)})
                    continue
                total_created += result["created"]
                total_skipped += result["skipped"]
                details.append({"file": str(f.relative_to(root)), **result})
        return {
            "importedFiles": imported,
            "createdQuestions": total_created,
            "skippedQuestions": total_skipped,
            "details": details,
        }

    @staticmethod
    def _selected_letter(selected, option_count: int) -> Optional[str]:
        if selected is None or isinstance(selected, bool):
            return None
        if isinstance(selected, str) and selected.strip().isdigit():
            selected = int(selected.strip())
        if isinstance(selected, int):
            return catalog.answer_letter(selected) if 0 <= selected < option_count else None
        text = selected.strip().upper()
        if len(text) == 1 and 0 <= catalog.letter_index(text) < option_count:
            return text
        return None

    def grade(self, student: models.Student, subject: str, year: int, answers: List[schemas.GradeItemIn]) -> dict:
        """Grade submitted answers against stored correct letters.

        Every question must belong to the requested exam. The result is
        persisted as an exam score and an `exam_accessed` activity.
        """
        if not answers:
            raise BadRequestException("answers must not be empty")
        ids = [a.question_id for a in answers]
        if len(set(ids)) != len(ids):
            raise BadRequestException("each question may be answered only once")
        items = []
        correct_count = 0
        canonical = None
        for answer in answers:
            q = self.questions.get(answer.question_id)
            if not q or q.subject.lower() != subject.lower() or q.year != year:
                raise BadRequestException(f"question not found in this exam: {answer.question_id}")
            canonical = q.subject
            letter = self._selected_letter(answer.selected, len(q.options))
            is_correct = letter is not None and letter == q.correct_answer
            correct_count += int(is_correct)
            items.append({
                "questionId": q.id,
                "selected": letter,
                "correct": is_correct,
                "correctAnswer": q.correct_answer,
                "explanation": q.explanation,
            })
        total = len(answers)
        percentage = round(correct_count / total * 100, 2)
        row = self.scores.save(models.ExamScore(
            student_id=student.id,
            subject=canonical,
            year=year,
            score=correct_count,
            total_questions=total,
            percentage=percentage,
        ))
        ActivityService(self.session).record_event(
            student, "exam_accessed", f"{canonical}-{year}", "entrance_exam",
            {"scoreId": row.id, "percentage": percentage},
        )
        return {
            "success": True,
            "scoreId": row.id,
            "score": correct_count,
            "total": total,
            "percentage": percentage,
            "items": items,
        }

    def submit_score(self, student: models.Student, payload: schemas.ScoreIn) -> dict:
        if payload.student is not None and str(payload.student) != str(student.id):
            raise ForbiddenException("You can only submit scores for yourself")
        row = models.ExamScore(
            student_id=student.id,
            subject=catalog.canonical_subject(payload.subject) or payload.subject,
            year=payload.year,
            score=payload.score,
            total_questions=payload.total_questions,
            percentage=round(payload.score / payload.total_questions * 100, 2),
        )
        if payload.submitted_at:
            row.submitted_at = payload.submitted_at
        return score_out(self.scores.save(row))

    def history(self, student: models.Student, subject: Optional[str] = None) -> List[dict]:
        return [score_out(s) for s in self.scores.list_for_student(student.id, subject)]


# --- notes -----------------------------------------------------------------

class NoteService:
    def __init__(self, session: Session):
        self.session = session
        self.notes = repositories.NoteRepository(session)
        self.progress = repositories.NoteProgressRepository(session)

    @staticmethod
    def _grade_or_400(grade) -> Optional[str]:
        if grade in (None, ""):
            return None
        try:
            return catalog.normalize_grade(grade)
        except ValueError as e:
            raise BadRequestException(str(e))

    def list(self, subject: Optional[str], grade: Optional[str]) -> List[dict]:
        return [note_out(n) for n in self.notes.list(subject, self._grade_or_400(grade))]

    def create(self, teacher: models.Teacher, payload: schemas.NoteIn) -> dict:
        if payload.subject.lower() != teacher.subject.lower():
            raise ForbiddenException("You can only manage content for your own subject")
        note = models.Note(
            subject=teacher.subject,
            grade=payload.grade,
            chapter=payload.chapter,
            title=payload.title,
            description=payload.description,
            created_by=teacher.id,
        )
        return note_out(self.notes.save(note))

    def save_progress(self, student: models.Student, payload: schemas.NoteProgressIn) -> dict:
        """Upsert the completion marker of one topic."""
        subject = payload.subject.lower()
        topic_id = str(payload.topic_id)
        row = self.progress.get_topic(student.id, subject, payload.grade, topic_id)
        if row is None:
            row = models.NoteProgress(
                student_id=student.id,
                subject=subject,
                grade=payload.grade,
                topic_id=topic_id,
                unit_id=str(payload.unit_id),
            )
        row.unit_id = str(payload.unit_id)
        row.completed = payload.completed
        row.updated_at = models.utcnow()
        return progress_out(self.progress.save(row))

    def list_progress(self, student: models.Student, subject: Optional[str], grade: Optional[str]) -> dict:
        rows = self.progress.list_for_student(student.id, subject, self._grade_or_400(grade))
        return {
            "success": True,
            "data": [progress_out(r) for r in rows],
            "completedTopics": sum(1 for r in rows if r.completed),
        }


# --- chat ------------------------------------------------------------------

class ChatService:
    """Rooms, membership, messages and moderation."""

    def __init__(self, session: Session):
        self.session = session
        self.chat = repositories.ChatRepository(session)
        self.students = repositories.StudentRepository(session)
        self.teachers = repositories.TeacherRepository(session)

    @staticmethod
    def is_visible(user, room: models.ChatRoom) -> bool:
        """Teachers see every room; students see rooms relevant to their stream."""
        if user.role == models.Teacher.role or not room.subject:
            return True
        room_subject = room.subject.lower()
        return any(s.lower() in room_subject for s in catalog.chat_subjects_for_stream(user.stream))

    def _room(self, room_id: int) -> models.ChatRoom:
        room = self.chat.get_room(room_id)
        if not room or not room.is_active:
            raise NotFoundException("Chat room not found")
        return room

    def _visible_room(self, user, room_id: int) -> models.ChatRoom:
        room = self._room(room_id)
        if not self.is_visible(user, room):
            raise ForbiddenException("This chat room is not available for your stream")
        return room

    def _room_out(self, room: models.ChatRoom, count: int, joined: bool) -> dict:
        return {
            "id": room.id,
            "name": room.name,
            "description": room.description,
            "subject": room.subject,
            "createdBy": room.created_by,
            "isActive": room.is_active,
            "participantCount": count,
            "isJoined": joined,
            "createdAt": iso(room.created_at),
        }

    def list_rooms(self, user) -> List[dict]:
        counts = self.chat.participant_counts()
        joined = self.chat.joined_room_ids(user.id, user.role)
        return [
            self._room_out(r, counts.get(r.id, 0), r.id in joined)
            for r in self.chat.list_active_rooms()
            if self.is_visible(user, r)
        ]

    def create_room(self, teacher: models.Teacher, payload: schemas.ChatRoomIn) -> dict:
        room = self.chat.save(models.ChatRoom(
            name=payload.name,
            description=payload.description,
            subject=payload.subject or None,
            created_by=teacher.id,
        ))
        self.session.add(models.ChatParticipant(room_id=room.id, user_id=teacher.id, user_role=teacher.role))
        self.session.add(models.ChatModerator(room_id=room.id, teacher_id=teacher.id))
        self.session.commit()
        self.session.refresh(room)
        TeacherService(self.session).record(teacher.id, "chatroom_created", f"Created chat room {room.name}", room.id)
        return self._room_out(room, 1, True)

    def _sender_name(self, user_id: int, role: str) -> Tuple[Optional[str], Optional[str]]:
        if role == models.Student.role:
            s = self.students.get(user_id)
            return (s.name if s else None), None
        t = self.teachers.get(user_id)
        return (t.name if t else None), (t.subject if t else None)

    def get_room(self, user, room_id: int) -> dict:
        room = self._visible_room(user, room_id)
        participants = self.chat.list_participants(room.id)
        out = self._room_out(
            room, len(participants),
            any(p.user_id == user.id and p.user_role == user.role for p in participants),
        )
        out["participants"] = [
            {
                "userId": p.user_id,
                "role": p.user_role,
                "name": self._sender_name(p.user_id, p.user_role)[0],
                "joinedAt": iso(p.joined_at),
            }
            for p in participants
        ]
        out["moderators"] = self.chat.list_moderator_ids(room.id)
        return out

    def join(self, user, room_id: int) -> dict:
        room = self._visible_room(user, room_id)
        existing = self.chat.get_participant(room.id, user.id, user.role)
        if existing:
            return {"success": True, "data": self.get_room(user, room.id), "alreadyJoined": True}
        self.chat.save(models.ChatParticipant(room_id=room.id, user_id=user.id, user_role=user.role))
        ActivityService(self.session).record_event(
            user, "chatroom_joined", str(room.id), "chatroom", {"name": room.name},
        )
        return {"success": True, "data": self.get_room(user, room.id), "alreadyJoined": False}

    def leave(self, user, room_id: int) -> None:
        room = self._room(room_id)
        participant = self.chat.get_participant(room.id, user.id, user.role)
        if not participant:
            raise NotFoundException("You are not a participant of this chat room")
        self.chat.remove(participant)

    def add_moderator(self, teacher: models.Teacher, room_id: int, teacher_id: int) -> List[int]:
        room = self._room(room_id)
        if room.created_by != teacher.id:
            raise ForbiddenException("Only the room creator can add moderators")
        if not self.teachers.get(teacher_id):
            raise NotFoundException("Teacher not found")
        if not self.chat.is_moderator(room.id, teacher_id):
            self.chat.save(models.ChatModerator(room_id=room.id, teacher_id=teacher_id))
        return self.chat.list_moderator_ids(room.id)

    def message_out(self, m: models.Message) -> dict:
        name, subject = self._sender_name(m.sender_id, m.sender_role)
        sender = {"userId": m.sender_id, "role": m.sender_role, "name": name}
        if subject:
            sender["subject"] = subject
        return {
            "id": m.id,
            "roomId": m.room_id,
            "sender": sender,
            "content": m.content,
            "imageUrl": m.image_url,
            "isDeleted": m.is_deleted,
            "isModerated": m.is_moderated,
            "createdAt": iso(m.created_at),
        }

    def messages(self, user, room_id: int) -> List[dict]:
        room = self._visible_room(user, room_id)
        return [self.message_out(m) for m in self.chat.list_messages(room.id)]

    def send_message(self, user, room_id: int, content: Optional[str], image: Optional[UploadFile] = None) -> dict:
        """Persist a message after the room and membership checks.

        The image, if any, is stored only once the sender is known to be a
        participant. Returns the serialized message.
        """
        room = self._room(room_id)
        if not self.chat.get_participant(room.id, user.id, user.role):
            raise ForbiddenException("You must join the chat room before sending messages")
        content = (content or "").strip()
        if image is None and not content:
            raise BadRequestException("Message content is required")
        image_url = storage.save_image(image, "chat-images")["url"] if image is not None else None
        message = self.chat.save(models.Message(
            room_id=room.id,
            sender_id=user.id,
            sender_role=user.role,
            content=content,
            image_url=image_url,
        ))
        return self.message_out(message)

    def moderate(self, teacher: models.Teacher, message_id: int) -> dict:
        message = self.chat.get_message(message_id)
        if not message:
            raise NotFoundException("Message not found")
        if not self.chat.is_moderator(message.room_id, teacher.id):
            raise ForbiddenException("Only moderators can moderate messages")
        message.is_deleted = True
        message.is_moderated = True
        message.moderated_by = teacher.id
        self.chat.save(message)
        logger.info("message %s moderated by teacher %s", message.id, teacher.id)
        return {"messageId": message.id, "roomId": message.room_id, "moderatedBy": teacher.id}


# --- PDFs ------------------------------------------------------------------

class PDFService:
    """Study material upload, listing, download tracking and removal."""

    def __init__(self, session: Session):
        self.session = session
        self.pdfs = repositories.PDFRepository(session)
        self.recent = repositories.RecentActivityRepository(session)
        self.notifications = repositories.NotificationRepository(session)

    @staticmethod
    def pdf_out(p: models.PDFDocument) -> dict:
        return {
            "id": p.id,
            "title": p.title,
            "subject": p.subject,
            "fileUrl": p.file_url,
            "uploadedBy": p.uploaded_by,
            "pageCount": p.page_count,
            "sizeBytes": p.size_bytes,
            "createdAt": iso(p.created_at),
        }

    def upload(self, teacher: models.Teacher, title: str, subject: str, file: UploadFile) -> dict:
        title = (title or "").strip()
        subject = (subject or "").strip()
        if not title or not subject:
            raise BadRequestException("title and subject are required")
        payload = storage.read_upload(file, settings.MAX_UPLOAD_BYTES)
        pages = storage.verify_pdf(payload)
        stored = storage.save_bytes(payload, "pdfs", ext=".pdf")
        pdf = self.pdfs.save(models.PDFDocument(
            title=title,
            subject=subject,
            uploaded_by=teacher.id,
            file_url=stored["url"],
            file_path=stored["path"],
            page_count=pages,
            size_bytes=stored["size"],
        ))
        NotificationService(self.session).create(
            title="New Study Material Available",
            message=f"New {subject} material: {title}",
            type="pdf_upload",
            subject=subject,
            related_item_id=pdf.id,
            related_item_type="PDF",
        )
        TeacherService(self.session).record(teacher.id, "pdf_added", f"Uploaded {title}", pdf.id)
        return self.pdf_out(pdf)

    def list(self, user, subject: Optional[str] = None) -> List[dict]:
        rows = self.pdfs.list(subject)
        if user.role != models.Student.role:
            return [self.pdf_out(p) for p in rows]
        downloads = self.pdfs.downloads_for_student(user.id)
        out = []
        for p in rows:
            item = self.pdf_out(p)
            item["isDownloaded"] = p.id in downloads
            item["downloadedAt"] = iso(downloads.get(p.id))
            out.append(item)
        return out

    def download(self, user, pdf_id: int) -> Tuple[Path, str]:
        """Return `(path, filename)` of a stored PDF, tracking student downloads."""
        pdf = self.pdfs.get(pdf_id)
        if not pdf:
            raise NotFoundException("PDF not found")
        path = Path(pdf.file_path)
        if not path.is_file():
            logger.warning("pdf %s missing on disk at %s", pdf.id, path)
            raise NotFoundException("PDF file not found")
        if user.role == models.Student.role:
            best_effort(self.session, "pdf download tracking",
                        lambda: self.pdfs.record_download(pdf.id, user.id, models.utcnow()))
        return path, f"{pdf.title}.pdf"

    def delete(self, teacher: models.Teacher, pdf_id: int) -> None:
        pdf = self.pdfs.get(pdf_id)
        if not pdf:
            raise NotFoundException("PDF not found")
        if pdf.uploaded_by != teacher.id:
            raise ForbiddenException("You can only delete PDFs you uploaded")
        file_path = pdf.file_path
        activities = self.recent.delete_for_resource(pdf.id, ["pdf_added"])
        notifications = self.notifications.delete_for_item(pdf.id, "PDF")
        downloads = self.pdfs.delete_downloads(pdf.id)
        self.pdfs.delete(pdf)
        storage.delete_file(file_path)
        logger.info("pdf %s deleted (activities=%d notifications=%d downloads=%d)",
                    pdf_id, activities, notifications, downloads)


# --- study tips ------------------------------------------------------------

class TipService:
    def __init__(self, session: Session):
        self.session = session
        self.tips = repositories.TipRepository(session)
        self.teachers = repositories.TeacherRepository(session)

    def tip_out(self, tip: models.StudyTip, author: Optional[models.Teacher], reaction: Optional[str] = None) -> dict:
        return {
            "id": tip.id,
            "category": tip.category,
            "level": tip.level,
            "title": tip.title,
            "description": tip.description,
            "subject": tip.subject,
            "createdBy": {
                "id": tip.created_by,
                "name": author.name if author else None,
                "subject": author.subject if author else None,
            },
            "likes": tip.likes,
            "dislikes": tip.dislikes,
            "myReaction": reaction,
            "createdAt": iso(tip.created_at),
            "updatedAt": iso(tip.updated_at),
        }

    @staticmethod
    def _validate_content(data: dict, teacher: models.Teacher) -> None:
        missing = [k for k in ("category", "level", "title", "description", "subject") if not data.get(k)]
        if missing:
            raise BadRequestException(f"Missing required fields: {', '.join(missing)}")
        if data["category"] not in catalog.TIP_CATEGORIES:
            raise BadRequestException(f"category must be one of {', '.join(catalog.TIP_CATEGORIES)}")
        if data["level"] not in catalog.TIP_LEVELS:
            raise BadRequestException(f"level must be one of {', '.join(catalog.TIP_LEVELS)}")
        if len(data["title"]) < 5:
            raise BadRequestException("Title must be at least 5 characters long")
        if len(data["description"]) < 10:
            raise BadRequestException("Description must be at least 10 characters long")
        if data["subject"].lower() != teacher.subject.lower():
            raise ForbiddenException("You can only create tips for your own subject")

    def create(self, teacher: models.Teacher, payload: schemas.StudyTipIn) -> dict:
        data = payload.model_dump()
        self._validate_content(data, teacher)
        data["subject"] = teacher.subject
        tip = self.tips.save(models.StudyTip(created_by=teacher.id, **data))
        TeacherService(self.session).record(teacher.id, "tip_added", f"Added study tip {tip.title}", tip.id)
        return self.tip_out(tip, teacher)

    def list(self, user, subject: Optional[str] = None) -> List[dict]:
        rows = self.tips.list(subject)
        authors = self.teachers.get_many(t.created_by for t in rows)
        reactions = self.tips.reactions_for_student(user.id) if user.role == models.Student.role else {}
        return [self.tip_out(t, authors.get(t.created_by), reactions.get(t.id)) for t in rows]

    def update(self, user, tip_id: int, payload: schemas.StudyTipUpdateIn) -> dict:
        tip = self.tips.get(tip_id)
        if not tip:
            raise NotFoundException("Study tip not found")
        if payload.action is not None:
            return self._react(user, tip, payload.action)
        if user.role != models.Teacher.role or tip.created_by != user.id:
            raise ForbiddenException("You can only update your own study tips")
        data = payload.model_dump(exclude={"action"})
        self._validate_content(data, user)
        for field in ("category", "level", "title", "description"):
            setattr(tip, field, data[field])
        tip.updated_at = models.utcnow()
        self.tips.save(tip)
        TeacherService(self.session).record(user.id, "tip_updated", f"Updated study tip {tip.title}", tip.id)
        return self.tip_out(tip, user)

    def _react(self, user, tip: models.StudyTip, action: str) -> dict:
        """Apply a like or dislike. A student reacts at most once per tip."""
        if action not in ("like", "dislike"):
            raise BadRequestException("action must be 'like' or 'dislike'")
        if user.role != models.Student.role:
            raise ForbiddenException("Only students can like or dislike tips")
        existing = self.tips.get_reaction(tip.id, user.id)
        if existing and existing.reaction == action:
            raise BadRequestException(f"You have already {action}d this tip")
        if existing:
            raise BadRequestException(f"You cannot {action} a tip you have {existing.reaction}d")
        if action == "like":
            tip.likes += 1
        else:
            tip.dislikes += 1
        self.session.add(models.TipReaction(tip_id=tip.id, student_id=user.id, reaction=action))
        self.tips.save(tip)
        return self.tip_out(tip, self.teachers.get(tip.created_by), action)

    def delete(self, teacher: models.Teacher, tip_id: int) -> None:
        tip = self.tips.get(tip_id)
        if not tip or tip.created_by != teacher.id:
            raise NotFoundException("Study tip not found or unauthorized")
        title = tip.title
        self.tips.delete(tip)
        TeacherService(self.session).record(teacher.id, "tip_deleted", f"Deleted study tip {title}", tip_id)


# --- user activity ---------------------------------------------------------

class ActivityService:
    """Resource access log behind "continue where you left off"."""

    def __init__(self, session: Session):
        self.session = session
        self.activities = repositories.ActivityRepository(session)

    def record(self, user, payload: schemas.ActivityIn) -> dict:
        if payload.activity_type is None or payload.resource_id in (None, "") or not payload.resource_type:
            raise BadRequestException("activityType, resourceId and resourceType are required")
        if payload.activity_type not in catalog.ACTIVITY_TYPES:
            raise BadRequestException(f"Invalid activity type: {payload.activity_type}")
        if payload.resource_type not in catalog.RESOURCE_TYPES:
            raise BadRequestException(f"Invalid resource type: {payload.resource_type}")
        row = self.activities.save(models.UserActivity(
            user_id=user.id,
            user_role=user.role,
            activity_type=payload.activity_type,
            resource_id=str(payload.resource_id),
            resource_type=payload.resource_type,
            details=payload.metadata or {},
        ))
        return activity_out(row)

    def record_event(self, user, activity_type: str, resource_id: str, resource_type: str, details: Optional[dict] = None):
        row = models.UserActivity(
            user_id=user.id,
            user_role=user.role,
            activity_type=activity_type,
            resource_id=resource_id,
            resource_type=resource_type,
            details=details or {},
        )
        return best_effort(self.session, f"user activity {activity_type}", lambda: self.activities.save(row))

    def latest(self, user) -> List[dict]:
        """Newest activity of each type, newest first."""
        newest: "OrderedDict[str, models.UserActivity]" = OrderedDict()
        for row in self.activities.list_for_user(user.id, user.role):
            newest.setdefault(row.activity_type, row)
        return [activity_out(a) for a in newest.values()]


# --- notifications ---------------------------------------------------------

class NotificationService:
    def __init__(self, session: Session):
        self.session = session
        self.notifications = repositories.NotificationRepository(session)

    @staticmethod
    def relevant_subjects(user) -> List[str]:
        if user.role == models.Student.role:
            return [s.lower() for s in catalog.exam_subjects_for_stream(user.stream)]
        return [user.subject.lower()]

    def _is_relevant(self, n: models.Notification, subjects: List[str]) -> bool:
        return not n.subject or n.subject.lower() in subjects

    def create(self, **fields):
        row = models.Notification(**fields)
        return best_effort(self.session, f"notification {fields.get('type')}", lambda: self.notifications.save(row))

    def list(self, user, unread_only: bool = False) -> dict:
        subjects = self.relevant_subjects(user)
        read = self.notifications.read_ids(user.id, user.role)
        data = []
        unread = 0
        for n in self.notifications.list_all():
            if not self._is_relevant(n, subjects):
                continue
            is_read = n.id in read
            unread += int(not is_read)
            if unread_only and is_read:
                continue
            data.append({
                "id": n.id,
                "title": n.title,
                "message": n.message,
                "type": n.type,
                "subject": n.subject,
                "relatedItem": {"id": n.related_item_id, "type": n.related_item_type} if n.related_item_id else None,
                "isRead": is_read,
                "createdAt": iso(n.created_at),
            })
        return {"success": True, "data": data, "unreadCount": unread}

    def mark_read(self, user, notification_id: int) -> None:
        n = self.notifications.get(notification_id)
        if not n or not self._is_relevant(n, self.relevant_subjects(user)):
            raise NotFoundException("Notification not found")
        if notification_id in self.notifications.read_ids(user.id, user.role):
            return
        self.notifications.save(models.NotificationRead(
            notification_id=notification_id, user_id=user.id, user_role=user.role,
        ))


# --- schedule --------------------------------------------------------------

class ScheduleService:
    """Weekly study plan of a student."""

    def __init__(self, session: Session):
        self.session = session
        self.entries = repositories.ScheduleRepository(session)

    @staticmethod
    def _day_or_400(day: Optional[str]) -> Optional[str]:
        if not day:
            return None
        for d in catalog.DAYS:
            if d.lower() == day.strip().lower():
                return d
        raise BadRequestException("day must be a weekday name")

    def list(self, student: models.Student, day: Optional[str] = None) -> List[dict]:
        rows = self.entries.list_for_student(student.id, self._day_or_400(day))
        rows = sorted(rows, key=lambda e: (catalog.DAYS.index(e.day), e.start_hour))
        return [schedule_out(e) for e in rows]

    def upsert(self, student: models.Student, payload: schemas.ScheduleIn) -> Tuple[dict, bool]:
        """Create or replace the slot starting at (day, startHour); returns `(entry, created)`."""
        row = self.entries.get_slot(student.id, payload.day, payload.start_hour)
        created = row is None
        if created:
            row = models.ScheduleEntry(student_id=student.id, day=payload.day, start_hour=payload.start_hour,
                                       end_hour=payload.end_hour, subject=payload.subject)
        else:
            row.end_hour = payload.end_hour
            row.subject = payload.subject
        return schedule_out(self.entries.save(row)), created

    def delete(self, student: models.Student, entry_id: int) -> None:
        row = self.entries.get(entry_id)
        if not row or row.student_id != student.id:
            raise NotFoundException("Schedule entry not found")
        self.entries.delete(row)

    def summary(self, student: models.Student) -> dict:
        by_subject: Dict[str, int] = {}
        by_day: Dict[str, int] = {}
        total = 0
        for e in self.entries.list_for_student(student.id):
            hours = e.end_hour - e.start_hour
            total += hours
            by_subject[e.subject] = by_subject.get(e.subject, 0) + hours
            by_day[e.day] = by_day.get(e.day, 0) + hours
        ordered_days = {d: by_day[d] for d in catalog.DAYS if d in by_day}
        return {"totalHours": total, "bySubject": by_subject, "byDay": ordered_days}
