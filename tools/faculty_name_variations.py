from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from facultyfeedback.database import init_db, make_engine, make_session_factory  # noqa: E402
from facultyfeedback.errors import FeedbackError  # noqa: E402
from facultyfeedback.faculty_names import FacultyNameService  # noqa: E402
from facultyfeedback.repositories import AuditRepository, FeedbackRepository, SubjectRepository  # noqa: E402
from facultyfeedback.settings import Settings  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report faculty name spellings that normalize to the same key.")
    parser.add_argument("--class-code", default=None)
    parser.add_argument("--branch", default=None)
    parser.add_argument("--cohort-year", default=None)
    parser.add_argument("--apply", action="store_true", help="Rename every variation to the suggested spelling")
    parser.add_argument("--json-out", type=Path, default=None)
    parser.add_argument("--database-url", default=None)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = Settings()
    engine = make_engine(args.database_url or settings.database_url)
    init_db(engine)

    with make_session_factory(engine)() as db:
        service = FacultyNameService(db, SubjectRepository(db), FeedbackRepository(db), AuditRepository(db))
        groups = service.variations(args.class_code, args.branch, args.cohort_year)
        print(f"Variation groups: {len(groups)}")
        for g in groups:
            print(f"- {g.key}: {', '.join(g.variations)} -> {g.suggested}")

        renamed = []
        if args.apply:
            for g in groups:
                for name in g.variations:
                    if name == g.suggested:
                        continue
                    try:
                        result = service.rename(
                            name, g.suggested, args.class_code, args.branch, args.cohort_year,
                            actor="tools/faculty_name_variations",
                        )
                    except FeedbackError as exc:
                        print(f"  skipped {name!r}: {exc.message}")
                        continue
                    renamed.append(result.to_dict())
                    print(f"  {name!r} -> {g.suggested!r}: {result.subjects_updated} subjects, {result.feedbacks_updated} feedback")

    if args.json_out:
        args.json_out.write_text(
            json.dumps({"variations": [g.to_dict() for g in groups], "renamed": renamed}, indent=2), encoding="utf-8"
        )
        print(f"Wrote {args.json_out}")


if __name__ == "__main__":
    main()
