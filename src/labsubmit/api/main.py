"""
FastAPI application for the submission service.

This module configures the FastAPI application, wires the record store,
language registry, execution client and orchestrator into a
:class:`SubmissionService`, enforces the shared API key and translates
service errors into JSON responses.

The caller's identity is supplied by the gateway in front of the service:
``x-user-id`` and ``x-user-role`` identify an authenticated actor and
``x-session-state: resolving`` marks a session that is still being
restored.  Requests without identity headers are unauthenticated.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse

from ..access import Role, Session
from ..config import Config
from ..errors import (
    AuthorizationError,
    DenialReason,
    LabSubmitError,
    LocalValidationError,
    OutOfRange,
    RecordNotFound,
    StateConflictError,
    TransportError,
)
from ..executor import ExecutionClient, ExecutionOrchestrator, ExecutionResult, LanguageRegistry, RetryPolicy
from ..models import (
    Assignment,
    AssignmentCreateRequest,
    AssignmentUpdateRequest,
    DraftRequest,
    EvaluateRequest,
    LanguageInfo,
    RunRequest,
    RunResponse,
    Subject,
    SubjectCreateRequest,
    SubjectTeachersRequest,
    Submission,
    SubmitResponse,
)
from ..reports import AssignmentReport, SubjectReport
from ..storage import GCSRecordStore, LocalRecordStore, RecordStore
from ..submissions import SubmissionService


logger = logging.getLogger("labsubmit")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[labsubmit] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

logger.setLevel(logging.INFO)


config = Config.from_env()

logger.info(
    "Loaded config: storage_backend=%s, storage_path=%s, execution_url=%s, run_timeout=%s, graded_timeout=%s, max_retries=%s",
    config.storage_backend,
    config.storage_path,
    config.execution_url,
    config.run_timeout_seconds,
    config.graded_timeout_seconds,
    config.max_retries,
)

if config.storage_backend == "gcs":
    if config.gcs_bucket is None:
        raise RuntimeError("LABSUBMIT_GCS_BUCKET must be set when using GCS storage backend")
    store: RecordStore = GCSRecordStore(config.gcs_bucket)
else:
    store = LocalRecordStore(config.storage_path)

if config.languages_file:
    registry = LanguageRegistry.from_file(config.languages_file)
else:
    registry = LanguageRegistry.default()
logger.info("Supported languages: %s", registry.ids())

orchestrator = ExecutionOrchestrator(
    registry,
    ExecutionClient(config.execution_url, token=config.execution_token),
    RetryPolicy.from_config(config),
)

service = SubmissionService(store, registry, orchestrator)


app = FastAPI(title="Submission Service", version="0.1.0")


def get_service() -> SubmissionService:
    return service


def get_session(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_session_state: Optional[str] = Header(default=None),
) -> Session:
    """Build the caller's session from the gateway identity headers."""
    if (x_session_state or "").lower() == "resolving":
        return Session.resolving()
    if not x_user_id or not x_user_role:
        return Session.anonymous()
    try:
        role = Role(x_user_role.lower())
    except ValueError:
        logger.warning("Unknown role %r for user %s; treating as unauthenticated", x_user_role, x_user_id)
        return Session.anonymous()
    return Session.of(x_user_id, role)


_DENIAL_STATUS = {
    DenialReason.UNAUTHENTICATED: 401,
    DenialReason.SESSION_RESOLVING: 503,
    DenialReason.NOT_FOUND: 404,
    DenialReason.NOT_OWNER: 403,
    DenialReason.INSUFFICIENT_ROLE: 403,
}


def _status_for(exc: LabSubmitError) -> int:
    if isinstance(exc, AuthorizationError):
        return _DENIAL_STATUS[exc.reason]
    if isinstance(exc, OutOfRange):
        return 422
    if isinstance(exc, LocalValidationError):
        return 400
    if isinstance(exc, StateConflictError):
        return 409
    if isinstance(exc, RecordNotFound):
        return 404
    if isinstance(exc, TransportError):
        return 503
    return 500


@app.exception_handler(LabSubmitError)
async def handle_service_error(request, exc: LabSubmitError):
    status = _status_for(exc)
    logger.info("%s %s -> %s (%s: %s)", request.method, request.url.path, status, exc.code, exc.message)
    return JSONResponse(status_code=status, content={"error": exc.code, "detail": exc.message})


@app.middleware("http")
async def authenticate(request, call_next):
    """Middleware to enforce API key authentication on all requests."""
    path = request.url.path
    method = request.method
    client = getattr(request.client, "host", "unknown")

    logger.info("Incoming request: %s %s from %s", method, path, client)

    if config.api_key:
        provided_key = request.headers.get("x-api-key")
        if provided_key != config.api_key:
            logger.warning("Invalid API key for %s %s from %s", method, path, client)
            return JSONResponse(status_code=401, content={"error": "invalid_api_key", "detail": "Invalid API key"})

    response = await call_next(request)
    logger.info("Response: %s %s -> %s", method, path, response.status_code)
    return response


def _run_response(result: ExecutionResult) -> RunResponse:
    return RunResponse(
        outcome=result.outcome.value,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        attempts=result.attempts,
        retryable=result.retryable,
    )


@app.get("/health")
async def health() -> Dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


@app.get("/v1/languages", response_model=List[LanguageInfo])
async def list_languages(svc: SubmissionService = Depends(get_service)) -> List[LanguageInfo]:
    return [
        LanguageInfo(id=spec.id, name=spec.display_name or spec.id, runtime=spec.runtime_name, version=spec.runtime_version)
        for spec in svc.registry
    ]


@app.post("/v1/run", response_model=RunResponse)
async def run_code(
    req: RunRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> RunResponse:
    """Run code from the editor without touching any submission."""
    result = await svc.run_code(session, req.language, req.code, req.stdin)
    return _run_response(result)


@app.post("/v1/subjects", response_model=Subject)
async def create_subject(
    req: SubjectCreateRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Subject:
    return svc.create_subject(session, req.name, req.code, req.teacher_ids)


@app.put("/v1/subjects/{subject_id}/teachers", response_model=Subject)
async def assign_teachers(
    subject_id: str,
    req: SubjectTeachersRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Subject:
    return svc.assign_teachers(session, subject_id, req.teacher_ids)


@app.get("/v1/subjects/{subject_id}/report", response_model=SubjectReport)
async def get_subject_report(
    subject_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> SubjectReport:
    return svc.subject_report(session, subject_id)


@app.post("/v1/assignments", response_model=Assignment)
async def create_assignment(
    req: AssignmentCreateRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Assignment:
    return svc.create_assignment(
        session,
        subject_id=req.subject_id,
        title=req.title,
        deadline=req.deadline,
        type=req.type,
        programming_language=req.programming_language,
        max_marks=req.max_marks,
        description=req.description,
    )


@app.patch("/v1/assignments/{assignment_id}", response_model=Assignment)
async def update_assignment(
    assignment_id: str,
    req: AssignmentUpdateRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Assignment:
    return svc.update_assignment(session, assignment_id, **req.model_dump(exclude_none=True))


@app.get("/v1/assignments/{assignment_id}", response_model=Assignment)
async def get_assignment(
    assignment_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Assignment:
    return svc.get_assignment(session, assignment_id)


@app.get("/v1/assignments/{assignment_id}/report", response_model=AssignmentReport)
async def get_assignment_report(
    assignment_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> AssignmentReport:
    return svc.report(session, assignment_id)


@app.get("/v1/assignments/{assignment_id}/submissions", response_model=List[Submission])
async def list_submissions(
    assignment_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> List[Submission]:
    return svc.list_submissions(session, assignment_id)


@app.put("/v1/assignments/{assignment_id}/submissions/me", response_model=Submission)
async def save_my_draft(
    assignment_id: str,
    req: DraftRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Submission:
    """Autosave the caller's draft, creating the submission on first save."""
    return svc.open_draft(session, assignment_id, req.content)


@app.get("/v1/submissions/{submission_id}", response_model=Submission)
async def get_submission(
    submission_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Submission:
    return svc.get_submission(session, submission_id)


@app.put("/v1/submissions/{submission_id}/draft", response_model=Submission)
async def save_draft(
    submission_id: str,
    req: DraftRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Submission:
    return svc.save_draft(session, submission_id, req.content)


@app.post("/v1/submissions/{submission_id}/run", response_model=RunResponse)
async def run_submission(
    submission_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> RunResponse:
    """Graded run of a practical draft; the outcome is stored on the submission."""
    result = await svc.execute_submission(session, submission_id)
    return _run_response(result)


@app.post("/v1/submissions/{submission_id}/submit", response_model=SubmitResponse)
async def submit(
    submission_id: str,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> SubmitResponse:
    submission, execution = await svc.finalize(session, submission_id)
    return SubmitResponse(
        submission=submission,
        execution=_run_response(execution) if execution is not None else None,
    )


@app.post("/v1/submissions/{submission_id}/evaluate", response_model=Submission)
async def evaluate(
    submission_id: str,
    req: EvaluateRequest,
    session: Session = Depends(get_session),
    svc: SubmissionService = Depends(get_service),
) -> Submission:
    return svc.evaluate(
        session,
        submission_id,
        marks=req.marks,
        feedback=req.feedback,
        plagiarism_score=req.plagiarism_score,
        rubric_scores=req.rubric_scores,
    )
