"""Helpers to discover exam files under a local `Exams/` folder.

The expected layout is `Exams/<Subject>/<year>/<files>`. The loader
returns `Path` objects suitable for feeding to the import service.
"""

from pathlib import Path
from typing import Iterable, List, Optional

SUPPORTED_EXT = {'.csv', '.txt', '.json', '.pdf', '.docx'}
DEFAULT_SKIP_KEYWORDS = ('examrep', 'report', 'answer_key')


def _should_skip(file_path: Path, skip_keywords: Iterable[str]) -> bool:
    """Return True if filename contains any skip keyword (case-insensitive)."""
    name = file_path.name.lower()
    for kw in skip_keywords:
        if kw and kw.lower() in name:
            return True
    return False


def exam_dir(root: Path, subject: str, year: int) -> Optional[Path]:
    """Return the folder of one exam, matching the subject folder case-insensitively."""
    if not root.exists():
        return None
    for child in root.iterdir():
        if child.is_dir() and child.name.lower() == subject.lower():
            candidate = child / str(year)
            return candidate if candidate.is_dir() else None
    return None


def find_exam_files(root: Path, subject: str, year: int, skip_keywords: Optional[Iterable[str]] = None) -> List[Path]:
    """Return supported exam files of `root/<subject>/<year>`, sorted.

    Files whose names contain any of `skip_keywords` are ignored so
    examiner reports and answer keys are not imported as questions.
    """
    skip_keywords = list(skip_keywords) if skip_keywords is not None else list(DEFAULT_SKIP_KEYWORDS)
    folder = exam_dir(root, subject, year)
    if folder is None:
        return []
    files = []
    for f in folder.rglob('*'):
        if f.is_file() and f.suffix.lower() in SUPPORTED_EXT and not _should_skip(f, skip_keywords):
            files.append(f)
    return sorted(files)


def list_exam_folders(root: Path) -> List[tuple]:
    """Return `(subject, year, path)` for every `<Subject>/<year>` folder under `root`."""
    out = []
    if not root.exists():
        return out
    for subject_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for year_dir in sorted(p for p in subject_dir.iterdir() if p.is_dir()):
            if year_dir.name.isdigit():
                out.append((subject_dir.name, int(year_dir.name), year_dir))
    return out
