"""Answer key loader for entrance exam folders."""

import csv
from pathlib import Path
from functools import lru_cache
from typing import Dict


@lru_cache(maxsize=32)
def load_answer_key(exam_dir: Path) -> Dict[int, str]:
    """Load `answer_key.csv` from an `Exams/<Subject>/<year>/` folder.

    Expected CSV columns: `question_number` (or `qnum`) and `correct`
    holding the option letter. Rows that cannot be read are skipped.
    """
    key_file = exam_dir / 'answer_key.csv'
    if not key_file.exists():
        return {}
    mapping: Dict[int, str] = {}
    with key_file.open('r', encoding='utf-8-sig') as f:
        reader = csv.DictReader(f)
        for row in reader:
            try:
                qnum = int(row.get('question_number') or row.get('qnum') or '')
            except ValueError:
                continue
            correct = (row.get('correct') or '').strip().upper()
            if len(correct) == 1 and correct.isalpha():
                mapping[qnum] = correct
    return mapping

