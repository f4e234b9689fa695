from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from . import __version__
from .accounts import AdminAccounts, StudentAccounts, student_dict
from .aggregation import AggregationEngine
from .auth import ADMIN_KIND, STUDENT_KIND, TokenSigner
from .cohort import CohortScope, cohort_from_request
from .database import init_db, make_engine, make_session_factory
from .errors import AuthenticationError, AuthorizationError, FeedbackError, ValidationError
from .faculty_names import FacultyNameService
from .ingestion import STUDENT_COLUMNS, SUBJECT_COLUMNS, StudentIngestor, SubjectIngestor, read_rows
from .models import AdminUser, Student
from .rating import QUESTIONS
from .repositories import (
    AuditRepository,
    FeedbackRepository,
    RoundControlRepository,
    StudentRepository,
    SubjectRepository,
    SubmissionRepository,
)
from .rounds import RoundController
from .settings import Settings
from .submission import FeedbackSubmitter, KeyedLocks, StudentIdentity, SubjectFeedback

logger = logging.getLogger(__name__)


class AdminLoginIn(BaseModel):
    username: str
    password: str


class RegisterIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)
    hallticket: str
    email: str
    password: str
    cohort_year: Optional[str] = None


class StudentLoginIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)
    hallticket: str
    password: str
    cohort_year: Optional[str] = None


class RoundToggleIn(BaseModel):
    class_code: str
    branch: str
    cohort_year: Optional[str] = None
    academic_year: Optional[str] = None
    round: str
    enabled: bool


class SubjectFeedbackIn(BaseModel):
    subject: str
    faculty: str
    answers: list[dict] = Field(default_factory=list)


class FeedbackIn(BaseModel):
    class_code: str
    round: str
    subjects: list[SubjectFeedbackIn] = Field(default_factory=list)
    suggestion: Optional[str] = None
    branch: Optional[str] = None
    cohort_year: Optional[str] = None


class RenameFacultyIn(BaseModel):
    original_name: str
    new_name: str
    class_code: Optional[str] = None
    branch: Optional[str] = None
    cohort_year: Optional[str] = None
    academic_year: Optional[str] = None


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_signer(request: Request) -> TokenSigner:
    return request.app.state.signer


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def cohort_scope(
    class_code: str = Query(...),
    branch: str = Query(...),
    cohort_year: Optional[str] = Query(None),
    academic_year: Optional[str] = Query(None),
) -> CohortScope:
    return CohortScope.from_request(class_code, branch, cohort_year, academic_year)


def optional_cohort(class_code: Optional[str], cohort_year: Optional[str], academic_year: Optional[str]) -> Optional[str]:
    if not (cohort_year or academic_year):
        return None
    return cohort_from_request(class_code, cohort_year, academic_year)


def require_admin(
    session_token: str = Query(...), db: Session = Depends(get_db), signer: TokenSigner = Depends(get_signer)
) -> AdminUser:
    payload = signer.read(session_token, ADMIN_KIND)
    admin = AdminAccounts(db).get(payload.get("admin_id"))
    if not admin:
        raise AuthenticationError("Invalid user", code="invalid_token")
    return admin


def current_student(
    session_token: str = Query(...), db: Session = Depends(get_db), signer: TokenSigner = Depends(get_signer)
) -> StudentIdentity:
    payload = signer.read(session_token, STUDENT_KIND)
    student = db.get(Student, payload.get("student_id"))
    if not student or not student.registered:
        raise AuthenticationError("Invalid user", code="invalid_token")
    return StudentIdentity(hallticket=student.hallticket, branch=student.branch, cohort_year=student.cohort_year)


def round_controller(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> RoundController:
    return RoundController(
        db, RoundControlRepository(db), AuditRepository(db), final_window_days=settings.final_round_window_days
    )


def student_accounts(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> StudentAccounts:
    return StudentAccounts(
        db, StudentRepository(db), SubmissionRepository(db), AuditRepository(db), bcrypt_rounds=settings.bcrypt_rounds
    )


def aggregation_engine(db: Session = Depends(get_db)) -> AggregationEngine:
    return AggregationEngine(SubjectRepository(db), FeedbackRepository(db), SubmissionRepository(db), StudentRepository(db))


def faculty_names(db: Session = Depends(get_db)) -> FacultyNameService:
    return FacultyNameService(db, SubjectRepository(db), FeedbackRepository(db), AuditRepository(db))


def feedback_submitter(request: Request, db: Session = Depends(get_db)) -> FeedbackSubmitter:
    return FeedbackSubmitter(
        db,
        RoundControlRepository(db),
        SubmissionRepository(db),
        FeedbackRepository(db),
        StudentRepository(db),
        request.app.state.submission_locks,
    )


def read_upload(file: UploadFile) -> str:
    try:
        return file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("Upload must be UTF-8 encoded CSV", code="invalid_upload") from exc


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = FastAPI(title=settings.app_name, version=__version__)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
    app.state.settings = settings
    app.state.engine = make_engine(settings.database_url)
    app.state.session_factory = make_session_factory(app.state.engine)
    app.state.signer = TokenSigner(settings.session_secret, settings.session_max_age_seconds)
    app.state.submission_locks = KeyedLocks()

    @app.exception_handler(FeedbackError)
    def feedback_error_handler(_request: Request, exc: FeedbackError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("startup")
    def startup():
        init_db(app.state.engine)
        with app.state.session_factory() as db:
            AdminAccounts(db, settings.bcrypt_rounds).seed(settings.admin_username, settings.admin_password)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    @app.post("/auth/admin/login")
    def admin_login(payload: AdminLoginIn, db: Session = Depends(get_db), signer: TokenSigner = Depends(get_signer)):
        admin = AdminAccounts(db, settings.bcrypt_rounds).login(payload.username, payload.password)
        return {"session_token": signer.issue(ADMIN_KIND, admin_id=admin.id), "role": admin.role}

    @app.post("/auth/register")
    def register(
        payload: RegisterIn, accounts: StudentAccounts = Depends(student_accounts), signer: TokenSigner = Depends(get_signer)
    ):
        student = accounts.register(payload.hallticket, payload.email, payload.password, payload.cohort_year)
        return {"session_token": signer.issue(STUDENT_KIND, student_id=student.id), "student": student_dict(student)}

    @app.post("/auth/login")
    def student_login(
        payload: StudentLoginIn, accounts: StudentAccounts = Depends(student_accounts), signer: TokenSigner = Depends(get_signer)
    ):
        student = accounts.login(payload.hallticket, payload.password, payload.cohort_year)
        return {"session_token": signer.issue(STUDENT_KIND, student_id=student.id), "student": student_dict(student)}

    @app.get("/students/check/{hallticket}")
    def check_hallticket(hallticket: str, accounts: StudentAccounts = Depends(student_accounts)):
        return accounts.check_hallticket(hallticket)

    @app.post("/admin/students/upload")
    def upload_students(
        file: UploadFile = File(...),
        scope: CohortScope = Depends(cohort_scope),
        db: Session = Depends(get_db),
        admin: AdminUser = Depends(require_admin),
    ):
        ingestor = StudentIngestor(
            db,
            StudentRepository(db),
            SubmissionRepository(db),
            AuditRepository(db),
            batch_size=settings.ingest_batch_size,
            batch_pause_seconds=settings.ingest_batch_pause_seconds,
        )
        summary = ingestor.ingest(read_rows(read_upload(file), STUDENT_COLUMNS), scope, actor=admin.username)
        return {"cohort_year": scope.cohort_year, **summary.to_dict()}

    @app.post("/admin/subjects/upload")
    def upload_subjects(
        file: UploadFile = File(...),
        scope: CohortScope = Depends(cohort_scope),
        db: Session = Depends(get_db),
        rounds: RoundController = Depends(round_controller),
        admin: AdminUser = Depends(require_admin),
    ):
        ingestor = SubjectIngestor(db, SubjectRepository(db), rounds, AuditRepository(db))
        summary = ingestor.ingest(read_rows(read_upload(file), SUBJECT_COLUMNS), scope, actor=admin.username)
        return {"cohort_year": scope.cohort_year, **summary.to_dict()}

    @app.post("/admin/rounds")
    def set_round(
        payload: RoundToggleIn, rounds: RoundController = Depends(round_controller), admin: AdminUser = Depends(require_admin)
    ):
        scope = CohortScope.from_request(payload.class_code, payload.branch, payload.cohort_year, payload.academic_year)
        state = rounds.set_enabled(scope, payload.round, payload.enabled, actor=admin.username)
        return {"cohort_year": scope.cohort_year, **state.to_dict()}

    @app.get("/rounds/status")
    def round_status(scope: CohortScope = Depends(cohort_scope), rounds: RoundController = Depends(round_controller)):
        return {"cohort_year": scope.cohort_year, **rounds.status(scope).to_dict()}

    @app.get("/me/subjects")
    def my_subjects(
        class_code: str = Query(...),
        branch: Optional[str] = Query(None),
        cohort_year: Optional[str] = Query(None),
        identity: StudentIdentity = Depends(current_student),
        db: Session = Depends(get_db),
    ):
        if (branch and branch != identity.branch) or (cohort_year and cohort_year != identity.cohort_year):
            raise AuthorizationError("Unauthorized to view subjects for this branch/cohort")
        scope = CohortScope(class_code.strip(), identity.branch, identity.cohort_year)
        subjects = SubjectRepository(db).list_for_scope(scope)
        return {
            "class": scope.class_code,
            "branch": scope.branch,
            "cohort_year": scope.cohort_year,
            "questions": list(QUESTIONS),
            "subjects": [{"subject": s.subject, "faculty": s.faculty} for s in subjects],
        }

    @app.get("/me/feedback-status")
    def my_feedback_status(
        class_code: str = Query(...),
        round: str = Query(...),
        identity: StudentIdentity = Depends(current_student),
        submitter: FeedbackSubmitter = Depends(feedback_submitter),
        rounds: RoundController = Depends(round_controller),
    ):
        scope = CohortScope(class_code.strip(), identity.branch, identity.cohort_year)
        return {
            "round": round.strip().lower(),
            "submitted": submitter.is_submitted(identity, scope.class_code, round),
            "round_open": rounds.is_open(scope, round),
        }

    @app.post("/me/feedback")
    def submit_feedback(
        payload: FeedbackIn,
        identity: StudentIdentity = Depends(current_student),
        submitter: FeedbackSubmitter = Depends(feedback_submitter),
    ):
        items = [SubjectFeedback(s.subject, s.faculty, s.answers) for s in payload.subjects]
        receipt = submitter.submit(
            identity,
            payload.class_code,
            payload.round,
            items,
            suggestion=payload.suggestion,
            branch=payload.branch,
            cohort_year=payload.cohort_year,
        )
        return receipt.to_dict()

    @app.get("/reports/faculty/{faculty}")
    def faculty_report(
        faculty: str,
        round: Optional[str] = Query(None),
        scope: CohortScope = Depends(cohort_scope),
        engine: AggregationEngine = Depends(aggregation_engine),
        _: AdminUser = Depends(require_admin),
    ):
        return {"faculty": faculty, "cohort_year": scope.cohort_year, "subjects": engine.faculty_performance(faculty, scope, round)}

    @app.get("/reports/class")
    def class_report(
        round: Optional[str] = Query(None),
        scope: CohortScope = Depends(cohort_scope),
        engine: AggregationEngine = Depends(aggregation_engine),
        _: AdminUser = Depends(require_admin),
    ):
        return {"class": scope.class_code, "cohort_year": scope.cohort_year, "subjects": engine.class_report(scope, round)}

    @app.get("/reports/department")
    def department_report(
        branch: str = Query(...),
        cohort_year: Optional[str] = Query(None),
        academic_year: Optional[str] = Query(None),
        round: Optional[str] = Query(None),
        engine: AggregationEngine = Depends(aggregation_engine),
        _: AdminUser = Depends(require_admin),
    ):
        cohort = cohort_from_request(None, cohort_year, academic_year)
        return {"branch": branch, "cohort_year": cohort, "classes": engine.department_report(branch, cohort, round)}

    @app.get("/reports/faculty-history")
    def faculty_history(
        faculty: str = Query(...),
        class_code: Optional[str] = Query(None),
        branch: Optional[str] = Query(None),
        cohort_year: Optional[str] = Query(None),
        academic_year: Optional[str] = Query(None),
        engine: AggregationEngine = Depends(aggregation_engine),
        _: AdminUser = Depends(require_admin),
    ):
        cohort = optional_cohort(class_code, cohort_year, academic_year)
        return {"faculty": faculty, "history": engine.faculty_history(faculty, class_code, branch, cohort)}

    @app.get("/reports/feedback-counts")
    def feedback_counts(
        scope: CohortScope = Depends(cohort_scope),
        engine: AggregationEngine = Depends(aggregation_engine),
        _: AdminUser = Depends(require_admin),
    ):
        return {"cohort_year": scope.cohort_year, **engine.feedback_counts(scope)}

    @app.get("/admin/faculties")
    def list_faculties(
        class_code: Optional[str] = Query(None),
        branch: Optional[str] = Query(None),
        cohort_year: Optional[str] = Query(None),
        academic_year: Optional[str] = Query(None),
        names: FacultyNameService = Depends(faculty_names),
        _: AdminUser = Depends(require_admin),
    ):
        cohort = optional_cohort(class_code, cohort_year, academic_year)
        return {"faculties": names.list_faculties(class_code, branch, cohort)}

    @app.get("/admin/faculty-variations")
    def faculty_variations(
        class_code: Optional[str] = Query(None),
        branch: Optional[str] = Query(None),
        cohort_year: Optional[str] = Query(None),
        academic_year: Optional[str] = Query(None),
        names: FacultyNameService = Depends(faculty_names),
        _: AdminUser = Depends(require_admin),
    ):
        cohort = optional_cohort(class_code, cohort_year, academic_year)
        groups = names.variations(class_code, branch, cohort)
        return {"total_groups": len(groups), "variations": [g.to_dict() for g in groups]}

    @app.put("/admin/faculty-name")
    def rename_faculty(
        payload: RenameFacultyIn, names: FacultyNameService = Depends(faculty_names), admin: AdminUser = Depends(require_admin)
    ):
        cohort = optional_cohort(payload.class_code, payload.cohort_year, payload.academic_year)
        result = names.rename(payload.original_name, payload.new_name, payload.class_code, payload.branch, cohort, actor=admin.username)
        return result.to_dict()

    @app.get("/admin/students")
    def list_students(
        branch: str = Query(...),
        class_code: Optional[str] = Query(None),
        cohort_year: Optional[str] = Query(None),
        academic_year: Optional[str] = Query(None),
        accounts: StudentAccounts = Depends(student_accounts),
        _: AdminUser = Depends(require_admin),
    ):
        cohort = cohort_from_request(class_code, cohort_year, academic_year)
        students = accounts.list_with_status(branch, cohort)
        return {
            "cohort_year": cohort,
            "total": len(students),
            "registered": sum(1 for s in students if s["registered"]),
            "students": students,
        }

    @app.put("/admin/students/{hallticket}/reset")
    def reset_student(
        hallticket: str,
        cohort_year: str = Query(...),
        reset_submissions: bool = Query(False),
        accounts: StudentAccounts = Depends(student_accounts),
        admin: AdminUser = Depends(require_admin),
    ):
        return accounts.reset_registration(hallticket, cohort_year, reset_submissions=reset_submissions, actor=admin.username)

    @app.get("/admin/submissions")
    def list_submissions(
        scope: CohortScope = Depends(cohort_scope), db: Session = Depends(get_db), _: AdminUser = Depends(require_admin)
    ):
        rows = SubmissionRepository(db).list_for_scope(scope)
        return {
            "cohort_year": scope.cohort_year,
            "submissions": [
                {
                    "hallticket": r.hallticket,
                    "initial_submitted": r.initial_submitted,
                    "initial_date": r.initial_date,
                    "final_submitted": r.final_submitted,
                    "final_date": r.final_date,
                }
                for r in rows
            ],
        }

    @app.get("/audit")
    def audit(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db), _: AdminUser = Depends(require_admin)):
        return [
            {
                "actor": a.actor,
                "action": a.action,
                "entity_type": a.entity_type,
                "entity_id": a.entity_id,
                "payload": a.payload,
                "created_at": a.created_at,
            }
            for a in AuditRepository(db).latest(limit)
        ]

    return app


app = create_app()
