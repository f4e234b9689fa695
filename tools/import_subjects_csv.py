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
from facultyfeedback.ingestion import SUBJECT_COLUMNS, SubjectIngestor, read_rows  # noqa: E402
from facultyfeedback.repositories import AuditRepository, RoundControlRepository, SubjectRepository  # noqa: E402
from facultyfeedback.rounds import RoundController  # noqa: E402
from facultyfeedback.settings import Settings  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replace one cohort's subject list from a subject,faculty CSV and open the initial round."
    )
    parser.add_argument("csv_path", type=Path)
    parser.add_argument("--class-code", required=True)
    parser.add_argument("--branch", required=True)
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--cohort-year")
    group.add_argument("--academic-year")
    parser.add_argument("--database-url", default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = Settings()
    engine = make_engine(args.database_url or settings.database_url)
    init_db(engine)
    scope = CohortScope.from_request(args.class_code, args.branch, args.cohort_year, args.academic_year)
    rows = read_rows(args.csv_path.read_text(encoding="utf-8-sig"), SUBJECT_COLUMNS)

    with make_session_factory(engine)() as db:
        rounds = RoundController(
            db, RoundControlRepository(db), AuditRepository(db), final_window_days=settings.final_round_window_days
        )
        summary = SubjectIngestor(db, SubjectRepository(db), rounds, AuditRepository(db)).ingest(
            rows, scope, actor="tools/import_subjects_csv"
        )

    print(f"Cohort: {scope.class_code} / {scope.branch} / {scope.cohort_year}")
    print(f"Inserted subjects: {summary.inserted}")
    if summary.skipped:
        print(f"Skipped rows: {len(summary.skipped)}")
        for s in summary.skipped:
            print(f"- line {s['line']}: {s['error']}")
    print("Initial round: enabled")


if __name__ == "__main__":
    main()
