from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from facultyfeedback.cohort import CohortScope  # noqa: E402
from facultyfeedback.database import init_db, make_engine, make_session_factory  # noqa: E402
from facultyfeedback.ingestion import STUDENT_COLUMNS, StudentIngestor, read_rows  # noqa: E402
from facultyfeedback.repositories import AuditRepository, StudentRepository, SubmissionRepository  # noqa: E402
from facultyfeedback.settings import Settings  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import a name,hallticket,branch CSV into one cohort.")
    parser.add_argument("csv_path", type=Path)
    parser.add_argument("--class-code", required=True, help='Class/semester code such as "1-1"')
    parser.add_argument("--branch", required=True)
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--cohort-year", help='Cohort window such as "2025-2029"')
    group.add_argument("--academic-year", help='Calendar academic year such as "2025-2026"')
    parser.add_argument("--database-url", default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = Settings()
    engine = make_engine(args.database_url or settings.database_url)
    init_db(engine)
    scope = CohortScope.from_request(args.class_code, args.branch, args.cohort_year, args.academic_year)
    rows = read_rows(args.csv_path.read_text(encoding="utf-8-sig"), STUDENT_COLUMNS)

    with make_session_factory(engine)() as db:
        ingestor = StudentIngestor(
            db,
            StudentRepository(db),
            SubmissionRepository(db),
            AuditRepository(db),
            batch_size=settings.ingest_batch_size,
            batch_pause_seconds=settings.ingest_batch_pause_seconds,
        )
        summary = ingestor.ingest(rows, scope, actor="tools/import_students_csv")

    print(f"Cohort: {scope.class_code} / {scope.branch} / {scope.cohort_year}")
    print(f"Processed: {summary.processed} (new={summary.new}, updated={summary.updated})")
    print(f"Errors: {summary.errors}")
    for r in summary.results:
        if not r.ok:
            print(f"- line {r.line} ({r.hallticket or '?'}): {r.error}")
    if summary.errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
