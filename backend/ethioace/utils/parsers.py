"""File parsing utilities that convert supported file formats into a
normalized entrance-question list.

Supported input types: JSON, CSV, TXT, PDF and DOCX. Parsers return a
list of dictionaries with keys: `question_text`, `options` (plain option
texts, in order), `correct_answer` (a letter or `None`), `explanation`,
`year` and `question_number`.
"""

import io
import json
import csv
import re
from typing import Dict, List, Optional, Tuple

import pdfplumber
import docx

from .. import catalog

# "A. text", "b) text", "(C) text"
_OPTION_LABEL_RE = re.compile(r"^\(?([A-Ha-h])[\.\)]\s+(.*)$")
# "Answer: B", "Correct answer - c"
_ANSWER_LINE_RE = re.compile(r"^(?:correct\s+)?answer\s*[:\-]\s*(.+)$", re.IGNORECASE)
# "12. What is ..." / "12) What is ..."
_NUMBERED_RE = re.compile(r"^(\d{1,3})[\.\)]\s+(.*)$")


def parse_file_to_questions(file_bytes: bytes, filename: str) -> List[Dict]:
    """Dispatch to the appropriate parser based on file extension."""
    name = filename.lower()
    if name.endswith('.json'):
        return parse_json(file_bytes)
    if name.endswith('.csv'):
        return parse_csv(file_bytes)
    if name.endswith('.txt'):
        return parse_txt(file_bytes)
    if name.endswith('.pdf'):
        return parse_pdf(file_bytes)
    if name.endswith('.docx'):
        return parse_docx(file_bytes)
    raise ValueError('Unsupported file type')


def parse_json(b: bytes):
    """Parse a JSON array (or `{"questions": [...]}`) of question objects."""
    data = json.loads(b.decode('utf-8-sig'))
    if isinstance(data, dict):
        data = data.get('questions') or []
    if not isinstance(data, list):
        raise ValueError('JSON must be an array of questions')
    return [normalize_question(item) for item in data]


def parse_csv(b: bytes):
    """Parse a CSV where a single column contains pipe-separated options.

    Expected columns: `question` or `question_text`, `options` (pipe
    separated, `answers` is accepted too) and optional `correct` holding a
    letter or the text of the correct option. Optional metadata columns are
    passed through: `explanation`, `year`, `question_number`/`qnum`.
    """
    out = []
    reader = csv.DictReader(io.StringIO(b.decode('utf-8-sig')))
    for row in reader:
        raw = row.get('options') or row.get('answers') or ''
        options = [_strip_label(p) for p in raw.split('|') if p.strip()]
        out.append({
            'question_text': str(row.get('question') or row.get('question_text') or '').strip(),
            'options': options,
            'correct_answer': resolve_correct(row.get('correct') or row.get('correct_answer'), options),
            'explanation': row.get('explanation') or None,
            'year': _coerce_int(row.get('year') or row.get('exam_year')),
            'question_number': _coerce_int(row.get('question_number') or row.get('qnum')),
        })
    return out


def parse_txt(b: bytes):
    """Parse plain text where questions are separated by blank lines.

    The first line of each block is the question, option lines follow
    (`A. ...`), and an optional `Answer: X` line names the correct one. A
    leading `*` or trailing `(correct)` on an option marks it as well.
    """
    return parse_blocks(_split_blocks(b.decode('utf-8-sig')))


def parse_pdf(b: bytes):
    """Extract text from PDF pages and parse it as question blocks."""
    text_parts = []
    with pdfplumber.open(io.BytesIO(b)) as pdf:
        for page in pdf.pages:
            text_parts.append(page.extract_text() or '')
    return parse_blocks(_split_blocks('\n'.join(text_parts)))


def parse_docx(b: bytes):
    """Parse a DOCX document into question blocks.

    Paragraph groups separated by empty paragraphs are treated as a
    question block.
    """
    doc = docx.Document(io.BytesIO(b))
    blocks = []
    current = []
    for p in doc.paragraphs:
        text = (p.text or '').strip()
        if not text:
            if current:
                blocks.append('\n'.join(current))
                current = []
            continue
        current.append(text)
    if current:
        blocks.append('\n'.join(current))
    return parse_blocks(blocks)


def parse_blocks(blocks: List[str]) -> List[Dict]:
    """Turn text blocks into question dicts.

    A block containing `|` is read as `question|optA|optB...`; otherwise
    the first line is the question and the remaining lines are options.
    """
    out = []
    for blk in blocks:
        if '|' in blk and '\n' not in blk.strip():
            parts = [x.strip() for x in blk.split('|') if x.strip()]
        else:
            parts = [l.strip() for l in blk.splitlines() if l.strip()]
        if not parts:
            continue
        question_text, number = _split_number(parts[0])
        options = []
        correct = None
        for line in parts[1:]:
            answer = _ANSWER_LINE_RE.match(line)
            if answer:
                correct = answer.group(1).strip()
                continue
            text, marked = _parse_option_line(line)
            if marked and correct is None:
                correct = catalog.answer_letter(len(options))
            options.append(text)
        out.append({
            'question_text': question_text,
            'options': options,
            'correct_answer': resolve_correct(correct, options),
            'explanation': None,
            'year': None,
            'question_number': number,
        })
    return out


def normalize_question(item: dict) -> dict:
    """Map alternative keys of a JSON question onto the canonical shape.

    Options may be plain strings or objects with `text`/`answer_text`
    (objects may carry `is_correct`).
    """
    if not isinstance(item, dict):
        return {'question_text': '', 'options': [], 'correct_answer': None}
    raw_options = item.get('options') or item.get('possible_answers') or item.get('answers') or []
    options = []
    marked = None
    for opt in raw_options:
        if isinstance(opt, dict):
            text = opt.get('text') or opt.get('answer_text') or opt.get('option_text') or ''
            if opt.get('is_correct') and marked is None:
                marked = catalog.answer_letter(len(options))
        else:
            text = str(opt)
        options.append(_strip_label(text))
    question = item.get('question_text') or item.get('question') or ''
    if isinstance(question, dict):
        question = question.get('text') or ''
    correct = item.get('correct_answer') or item.get('correctAnswer') or item.get('answer') or marked
    return {
        'question_text': str(question).strip(),
        'options': options,
        'correct_answer': resolve_correct(correct, options),
        'explanation': item.get('explanation') or item.get('solution') or None,
        'year': _coerce_int(item.get('year') or item.get('exam_year')),
        'question_number': _coerce_int(item.get('question_number') or item.get('questionNumber') or item.get('qnum')),
    }


def resolve_correct(value, options: List[str]) -> Optional[str]:
    """Return the letter of the correct option or `None` if unknown.

    `value` may be a letter (`"b"`), an option text or a 0-based index.
    Letters outside the option range resolve to `None`.
    """
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return catalog.answer_letter(value) if 0 <= value < len(options) else None
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 1 and text.isalpha():
        idx = catalog.letter_index(text)
        return catalog.answer_letter(idx) if 0 <= idx < len(options) else None
    lowered = text.lower()
    for i, opt in enumerate(options):
        if opt.strip().lower() == lowered:
            return catalog.answer_letter(i)
    return None


def _split_blocks(text: str) -> List[str]:
    return [sec.strip() for sec in re.split(r'\n\s*\n', text.replace('\r\n', '\n')) if sec.strip()]


def _split_number(line: str) -> Tuple[str, Optional[int]]:
    m = _NUMBERED_RE.match(line)
    if m:
        return m.group(2).strip(), int(m.group(1))
    return line.strip(), None


def _strip_label(text: str) -> str:
    m = _OPTION_LABEL_RE.match(text.strip())
    return m.group(2).strip() if m else text.strip()


def _parse_answer_line(text: str) -> Tuple[str, bool]:
    """Detect simple correctness markers in an option line.

    Supports leading '*' or trailing markers like '(correct)'; falls back to False.
    """
    is_correct = False
    cleaned = text.strip()
    lower = cleaned.lower()
    for marker in ('(correct)', '[correct]', '{correct}'):
        if lower.endswith(marker):
            is_correct = True
            cleaned = cleaned[: -len(marker)].strip()
            break
    if cleaned.startswith('*'):
        is_correct = True
        cleaned = cleaned.lstrip('*').strip()
    return cleaned, is_correct


def _parse_option_line(text: str) -> Tuple[str, bool]:
    cleaned, marked = _parse_answer_line(text)
    return _strip_label(cleaned), marked


def _coerce_int(val):
    try:
        return int(val) if val is not None and str(val).strip() != '' else None
    except (TypeError, ValueError):
        return None
