"""Fixed domain vocabularies: streams, subjects, tip and activity kinds."""

import re
from typing import Dict, List, Optional

STREAMS = ("Natural", "Social")

COMMON_EXAM_SUBJECTS = ["English", "Mathematics", "Aptitude"]
STREAM_EXAM_SUBJECTS: Dict[str, List[str]] = {
    "Natural": ["Biology", "Chemistry", "Physics"],
    "Social": ["Geography", "History", "Economics"],
}
ALL_EXAM_SUBJECTS = COMMON_EXAM_SUBJECTS + [s for subjects in STREAM_EXAM_SUBJECTS.values() for s in subjects]

# Chat rooms are matched by substring, so broader labels are listed too.
COMMON_CHAT_SUBJECTS = ["English", "Aptitude", "General"]
STREAM_CHAT_SUBJECTS: Dict[str, List[str]] = {
    "Natural": ["Physics", "Chemistry", "Biology", "Mathematics", "Natural Science"],
    "Social": ["Geography", "History", "Economics", "Social Science"],
}

TIP_CATEGORIES = ("Subject Oriented", "Study Skills", "Exam Strategies")
TIP_LEVELS = ("Easy", "Medium", "Hard")

ACTIVITY_TYPES = (
    "course_accessed",
    "exam_accessed",
    "quiz_accessed",
    "pdf_viewed",
    "note_viewed",
    "chatroom_joined",
)
RESOURCE_TYPES = ("course", "entrance_exam", "quiz", "pdf", "note", "chatroom")

DAYS = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")
FIRST_HOUR = 7
LAST_HOUR = 23

GRADES = ("9", "10", "11", "12")

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")
PHONE_RE = re.compile(r"^\+251\d{9}$")


def exam_subjects_for_stream(stream: str) -> List[str]:
    """Subjects a student of `stream` can practise, common ones first."""
    return COMMON_EXAM_SUBJECTS + STREAM_EXAM_SUBJECTS.get(stream, [])


def chat_subjects_for_stream(stream: str) -> List[str]:
    return STREAM_CHAT_SUBJECTS.get(stream, []) + COMMON_CHAT_SUBJECTS


def canonical_subject(value: str) -> Optional[str]:
    """Map a case-insensitive subject name to its catalog spelling."""
    lowered = (value or "").strip().lower()
    for subject in ALL_EXAM_SUBJECTS:
        if subject.lower() == lowered:
            return subject
    return None


def normalize_grade(value) -> str:
    """Reduce inputs like `"Grade 9"` or `9` to the bare grade string."""
    digits = re.sub(r"\D", "", str(value or ""))
    if digits not in GRADES:
        raise ValueError(f"grade must be one of {', '.join(GRADES)}")
    return digits


def answer_letter(index: int) -> str:
    return chr(ord("A") + index)


def letter_index(letter: str) -> int:
    return ord(letter.strip().upper()) - ord("A")
