"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the EthioAce learning backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. All REST routes live under
`/api/v1`; the realtime chat channel is served at `/ws`.

Endpoint groups:
- accounts: /signup, /teachers/signup, /login, /password/*, /students/*, /teachers/*
- entrance exams: /entrance/*, /score
- course notes: /notes, /notes/progress
- chat: /chat/rooms/*, /chat/messages/*
- study materials: /pdfs/*
- study tips: /tips/*
- user activity: /user-activity/*
- notifications: /notifications/*
- schedule: /schedule/*
"""

import json
import logging
import os
import time
import uuid
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models, realtime, schemas, services
from .auth import Account, get_current_student, get_current_teacher, get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .exceptions import BadRequestException, ForbiddenException
from .utils import storage
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="EthioAce API")
api = APIRouter(prefix="/api/v1")
logger = logging.getLogger("ethioace.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
auth_rate_limiter = InMemoryRateLimiter(window_seconds=60)

# Allow the mobile client and local HTML testers in dev
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    log_it = request.url.path.startswith("/api")
    info = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        if log_it:
            info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
            logger.exception("request_failed %s", json.dumps(info, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    if log_it:
        info["status_code"] = response.status_code
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info("request_done %s", json.dumps(info, ensure_ascii=True))
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as `{success: false, message, detail}`."""
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message, "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    message = "Invalid request"
    if errors:
        first = errors[0]
        msg = first["msg"].removeprefix("Value error, ")
        field = ".".join(str(p) for p in first["loc"] if p not in ("body", "query", "path", "form"))
        message = f"{field}: {msg}" if field else msg
    return JSONResponse(status_code=422, content={"success": False, "message": message, "detail": errors})


def _enforce_auth_rate_limit(request: Request) -> None:
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    auth_rate_limiter.enforce(key, settings.LOGIN_RATE_LIMIT_PER_MIN)


def _deliver_reset_link(email: str, link: str) -> None:
    """Hand a password reset link to the mail channel.

    No mail transport is configured, so the link is logged for operators.
    """
    logger.info("password reset link for %s: %s", email, link)


# --- accounts --------------------------------------------------------------

@api.post("/signup", status_code=201)
def signup(payload: schemas.SignupIn, db: Session = Depends(get_session)):
    """Register a student. 409 when the email is already used by any account."""
    student = services.AuthService(db).register_student(payload)
    logger.info("student registered id=%s stream=%s", student.id, student.stream)
    return {"success": True, "message": "Registration successful", "userId": student.id}


@api.post("/teachers/signup", status_code=201)
def teacher_signup(payload: schemas.TeacherSignupIn, db: Session = Depends(get_session)):
    teacher = services.AuthService(db).register_teacher(payload)
    logger.info("teacher registered id=%s subject=%s", teacher.id, teacher.subject)
    return {"success": True, "message": "Registration successful", "userId": teacher.id}


@api.post("/login/")
@api.post("/login", include_in_schema=False)
def login(payload: schemas.LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a student or teacher and return a signed JWT token.

    The token carries `user_id`, `role` and `email`. The response also
    tells the client where to navigate next.
    """
    _enforce_auth_rate_limit(request)
    account, token = services.AuthService(db).authenticate(payload.email, payload.password)
    out = {
        "success": True,
        "token": token,
        "userId": account.id,
        "role": account.role,
        "redirect": f"/{account.role}/{account.id}",
    }
    if account.role == models.Student.role:
        out["stream"] = account.stream
    else:
        out["subject"] = account.subject
    return out


@api.post("/password/request")
def request_password_reset(payload: schemas.PasswordResetRequestIn, request: Request, db: Session = Depends(get_session)):
    """Start a password reset. Always answers 200 so emails cannot be probed."""
    _enforce_auth_rate_limit(request)
    token = services.PasswordResetService(db).request(payload.email)
    if token:
        _deliver_reset_link(payload.email, f"{settings.RESET_LINK_BASE}/{token}")
    return {"success": True, "message": "If that email is registered, a reset link has been sent"}


@api.get("/password/verify/{token}")
def verify_password_token(token: str, db: Session = Depends(get_session)):
    if services.PasswordResetService(db).verify(token):
        return {"success": True, "message": "Token is valid"}
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid or expired token"})


@api.post("/password/reset/{token}")
def reset_password(token: str, payload: schemas.PasswordResetIn, db: Session = Depends(get_session)):
    services.PasswordResetService(db).reset(token, payload.password)
    return {"success": True, "message": "Password has been reset"}


@api.get("/students/{student_id}")
def get_student(student_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return services.StudentService(db).get_profile(user, student_id)


@api.put("/students/{student_id}")
def update_student(
    student_id: int,
    payload: schemas.StudentUpdateIn,
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    return services.StudentService(db).update(user, student_id, payload)


@api.post("/students/{student_id}/profile-picture")
def upload_profile_picture(
    student_id: int,
    image: UploadFile = File(...),
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    return services.StudentService(db).set_profile_picture(user, student_id, image)


@api.get("/teachers/me/activity")
def teacher_activity(limit: int = 20, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    """Recent dashboard activity of the calling teacher, newest first."""
    return {"success": True, "data": services.TeacherService(db).recent_activity(teacher, limit)}


@api.get("/teachers/{teacher_id}")
def get_teacher(teacher_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return services.TeacherService(db).get_profile(teacher_id)


# --- entrance exams --------------------------------------------------------

@api.get("/entrance/subjects")
def entrance_subjects(db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    """Subjects available to the caller with the years that have questions."""
    return services.ExamService(db).subjects_for(user)


@api.post("/entrance/questions", status_code=201)
def create_entrance_question(
    payload: schemas.QuestionIn,
    db: Session = Depends(get_session),
    teacher: models.Teacher = Depends(get_current_teacher),
):
    return services.ExamService(db).create_question(teacher, payload)


@api.post("/entrance/import")
def import_entrance_questions(
    file: UploadFile = File(...),
    subject: str = Form(...),
    year: Optional[int] = Form(None),
    db: Session = Depends(get_session),
    teacher: models.Teacher = Depends(get_current_teacher),
):
    """Upload a single file and import any questions found.

    The uploaded file may be CSV, TXT, JSON, PDF or DOCX. Returns a JSON
    summary with created/skipped counts and per-item validation errors.
    """
    svc = services.ExamService(db)
    canonical = svc.subject_or_400(subject)
    svc.check_author(teacher, canonical)
    content = storage.read_upload(file, settings.MAX_UPLOAD_BYTES)
    try:
        return svc.import_file(content, file.filename, canonical, year, created_by=teacher.id)
    except ValueError as e:
        raise BadRequestException(str(e))


@api.post("/entrance/import_from_exams")
def import_from_exams(
    subject: Optional[str] = None,
    year: Optional[int] = None,
    db: Session = Depends(get_session),
    teacher: models.Teacher = Depends(get_current_teacher),
):
    """Scan the local `Exams/<Subject>/<year>/` folders and import supported files."""
    return services.ExamService(db).import_from_exams(subject, year, created_by=teacher.id)


@api.get("/entrance/{subject}/{year}")
def entrance_exam(subject: str, year: int, db: Session = Depends(get_session)):
    """Questions of one exam ordered by question number; empty list when none."""
    return services.ExamService(db).list_exam(subject, year)


@api.post("/entrance/{subject}/{year}/grade")
def grade_entrance_exam(
    subject: str,
    year: int,
    submission: schemas.GradeIn,
    db: Session = Depends(get_session),
    student: models.Student = Depends(get_current_student),
):
    """Grade a submitted exam and store the result as a score."""
    return services.ExamService(db).grade(student, subject, year, submission.answers)


@api.post("/score", status_code=201)
def submit_score(payload: schemas.ScoreIn, db: Session = Depends(get_session), student: models.Student = Depends(get_current_student)):
    return {"success": True, "data": services.ExamService(db).submit_score(student, payload)}


@api.get("/score")
def score_history(subject: Optional[str] = None, db: Session = Depends(get_session), student: models.Student = Depends(get_current_student)):
    return {"success": True, "data": services.ExamService(db).history(student, subject)}


# --- course notes ----------------------------------------------------------

@api.get("/notes")
def list_notes(subject: Optional[str] = None, grade: Optional[str] = None, db: Session = Depends(get_session)):
    return services.NoteService(db).list(subject, grade)


@api.post("/notes", status_code=201)
def create_note(payload: schemas.NoteIn, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    return services.NoteService(db).create(teacher, payload)


@api.post("/notes/progress")
def save_note_progress(
    payload: schemas.NoteProgressIn,
    db: Session = Depends(get_session),
    student: models.Student = Depends(get_current_student),
):
    return {"success": True, "data": services.NoteService(db).save_progress(student, payload)}


@api.get("/notes/progress")
def note_progress(
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    db: Session = Depends(get_session),
    student: models.Student = Depends(get_current_student),
):
    return services.NoteService(db).list_progress(student, subject, grade)


# --- chat ------------------------------------------------------------------

@api.get("/chat/rooms")
def list_chat_rooms(db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return {"success": True, "data": services.ChatService(db).list_rooms(user)}


@api.post("/chat/rooms", status_code=201)
def create_chat_room(payload: schemas.ChatRoomIn, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    return {"success": True, "data": services.ChatService(db).create_room(teacher, payload)}


@api.get("/chat/rooms/{room_id}")
def get_chat_room(room_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return {"success": True, "data": services.ChatService(db).get_room(user, room_id)}


@api.post("/chat/rooms/{room_id}/join")
def join_chat_room(room_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return services.ChatService(db).join(user, room_id)


@api.post("/chat/rooms/{room_id}/leave")
def leave_chat_room(room_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    services.ChatService(db).leave(user, room_id)
    return {"success": True, "message": "Left chat room"}


@api.post("/chat/rooms/{room_id}/moderators")
def add_chat_moderator(
    room_id: int,
    payload: schemas.ModeratorIn,
    db: Session = Depends(get_session),
    teacher: models.Teacher = Depends(get_current_teacher),
):
    return {"success": True, "data": services.ChatService(db).add_moderator(teacher, room_id, payload.teacher_id)}


@api.get("/chat/rooms/{room_id}/messages")
def chat_room_messages(room_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return {"success": True, "data": services.ChatService(db).messages(user, room_id)}


@api.post("/chat/messages", status_code=201)
def send_chat_message(
    payload: schemas.MessageIn,
    background: BackgroundTasks,
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    """Persist a message and push it to sockets joined to the room."""
    message = services.ChatService(db).send_message(user, payload.room_id, payload.content)
    background.add_task(realtime.manager.broadcast, payload.room_id, "receive_message", message)
    return {"success": True, "data": message}


@api.post("/chat/messages/image", status_code=201)
def send_chat_image(
    background: BackgroundTasks,
    room_id: int = Form(..., alias="roomId"),
    content: Optional[str] = Form(None),
    image: UploadFile = File(...),
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    message = services.ChatService(db).send_message(user, room_id, content, image=image)
    background.add_task(realtime.manager.broadcast, room_id, "receive_message", message)
    return {"success": True, "data": message}


@api.post("/chat/messages/{message_id}/moderate")
def moderate_chat_message(
    message_id: int,
    background: BackgroundTasks,
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    """Soft-delete a message. Only teachers moderating the room may do this."""
    if user.role != models.Teacher.role:
        raise ForbiddenException("Only teachers can moderate messages")
    result = services.ChatService(db).moderate(user, message_id)
    background.add_task(
        realtime.manager.broadcast,
        result["roomId"],
        "message_moderated",
        {"messageId": result["messageId"], "moderatedBy": result["moderatedBy"]},
    )
    return {"success": True, "data": result}


# --- study materials -------------------------------------------------------

@api.post("/pdfs/upload", status_code=201)
def upload_pdf(
    title: str = Form(...),
    subject: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    teacher: models.Teacher = Depends(get_current_teacher),
):
    pdf = services.PDFService(db).upload(teacher, title, subject, file)
    return {"message": "PDF uploaded successfully", "pdf": pdf}


@api.get("/pdfs")
def list_pdfs(subject: Optional[str] = None, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return services.PDFService(db).list(user, subject)


@api.get("/pdfs/{pdf_id}/download")
def download_pdf(pdf_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    path, filename = services.PDFService(db).download(user, pdf_id)
    return FileResponse(path, media_type="application/pdf", filename=filename)


@api.delete("/pdfs/{pdf_id}")
def delete_pdf(pdf_id: int, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    services.PDFService(db).delete(teacher, pdf_id)
    return {"success": True, "message": "PDF deleted successfully"}


# --- study tips ------------------------------------------------------------

@api.post("/tips", status_code=201)
def create_tip(payload: schemas.StudyTipIn, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    return {"success": True, "data": services.TipService(db).create(teacher, payload)}


@api.get("/tips")
def list_tips(subject: Optional[str] = None, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return {"success": True, "data": services.TipService(db).list(user, subject)}


@api.put("/tips/{tip_id}")
def update_tip(
    tip_id: int,
    payload: schemas.StudyTipUpdateIn,
    db: Session = Depends(get_session),
    user: Account = Depends(get_current_user),
):
    """Like/dislike a tip (`action`) or replace its content (owner only)."""
    return {"success": True, "data": services.TipService(db).update(user, tip_id, payload)}


@api.delete("/tips/{tip_id}")
def delete_tip(tip_id: int, db: Session = Depends(get_session), teacher: models.Teacher = Depends(get_current_teacher)):
    services.TipService(db).delete(teacher, tip_id)
    return {"success": True, "message": "Study tip deleted successfully"}


# --- user activity ---------------------------------------------------------

@api.post("/user-activity", status_code=201)
def record_activity(payload: schemas.ActivityIn, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    data = services.ActivityService(db).record(user, payload)
    return {"success": True, "message": "Activity recorded", "data": data}


@api.get("/user-activity/latest")
def latest_activity(db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    """Newest activity of each type for the caller."""
    return {"success": True, "data": services.ActivityService(db).latest(user)}


# --- notifications ---------------------------------------------------------

@api.get("/notifications")
def list_notifications(unread_only: bool = Query(False, alias="unreadOnly"), db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    return services.NotificationService(db).list(user, unread_only=unread_only)


@api.post("/notifications/{notification_id}/read")
def read_notification(notification_id: int, db: Session = Depends(get_session), user: Account = Depends(get_current_user)):
    services.NotificationService(db).mark_read(user, notification_id)
    return {"success": True}


# --- schedule --------------------------------------------------------------

@api.get("/schedule")
def list_schedule(day: Optional[str] = None, db: Session = Depends(get_session), student: models.Student = Depends(get_current_student)):
    return {"success": True, "data": services.ScheduleService(db).list(student, day)}


@api.post("/schedule", status_code=201)
def save_schedule_entry(
    payload: schemas.ScheduleIn,
    response: Response,
    db: Session = Depends(get_session),
    student: models.Student = Depends(get_current_student),
):
    """Create a slot (201) or update the one starting at the same day/hour (200)."""
    entry, created = services.ScheduleService(db).upsert(student, payload)
    if not created:
        response.status_code = 200
    return {"success": True, "data": entry}


@api.delete("/schedule/{entry_id}")
def delete_schedule_entry(entry_id: int, db: Session = Depends(get_session), student: models.Student = Depends(get_current_student)):
    services.ScheduleService(db).delete(student, entry_id)
    return {"success": True}


@api.get("/schedule/summary")
def schedule_summary(db: Session = Depends(get_session), student: models.Student = Depends(get_current_student)):
    return services.ScheduleService(db).summary(student)


app.include_router(api)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    await realtime.chat_socket(websocket, token)


@app.get("/", response_class=HTMLResponse)
def home():
    """Minimal service banner for quick manual testing."""
    return """
    <!DOCTYPE html>
    <html>
    <head><meta charset="UTF-8" /><title>EthioAce API</title></head>
    <body style="font-family: Arial, sans-serif; margin: 32px;">
      <h1>EthioAce API</h1>
      <p>REST routes live under <code>/api/v1</code>; chat sockets connect to <code>/ws?token=...</code>.</p>
      <p><a href="/docs">Swagger UI</a></p>
    </body>
    </html>
    """


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
