"""CLI script to import entrance exams from the local `Exams/` folder into the backend DB.
Usage: python scripts/import_exams.py [--subject SUBJECT] [--year YEAR]

The folder layout is `Exams/<Subject>/<year>/`; an `answer_key.csv` in a
year folder supplies correct answers for questions that lack one.
"""
import argparse
import sys
from typing import Optional

from sqlmodel import Session

from ethioace import services
from ethioace.database import create_db_and_tables, engine
from ethioace.exceptions import BadRequestException


def main(subject: Optional[str] = None, year: Optional[int] = None) -> int:
    """Scan the configured `EXAMS_DIR` and import found files.

    Results are printed to stdout for a quick CLI feedback loop. Returns
    the process exit code.
    """
    create_db_and_tables()
    with Session(engine) as session:
        try:
            summary = services.ExamService(session).import_from_exams(subject, year)
        except BadRequestException as e:
            print(e.detail)
            return 1
    for item in summary['details']:
        if 'error' in item:
            print(f"Error importing {item['file']}: {item['error']}")
        else:
            print(f"Imported {item['file']}: created {item['created']}, "
                  f"skipped {item['skipped']}, errors {len(item['errors'])}")
    print(f"Total created questions: {summary['createdQuestions']}, skipped {summary['skippedQuestions']}")
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--subject', help='Import only this subject folder (e.g. Physics)')
    parser.add_argument('--year', type=int, help='Import only this year folder')
    args = parser.parse_args()
    sys.exit(main(subject=args.subject, year=args.year))
