"""Submission lifecycle.

A submission moves strictly forward::

    draft ──submit──▶ submitted ──evaluate──▶ evaluated ─┐
      ▲  │                                      ▲        │ re-evaluate
      └──┘ save_draft                           └────────┘

Every mutation runs through :meth:`RecordStore.update`, and the
authorization and lifecycle checks run *inside* the update callback.  They
therefore see exactly the state that is about to be replaced, and a
rejected transition leaves the stored record untouched.  Two concurrent
``submit`` calls on one submission serialise on the record: the first wins,
the second observes ``submitted`` and fails with a state conflict.

Practical assignments are executed remotely before they are submitted.  The
outcome code of the latest graded run is stored on the submission and a
run that failed local validation (unsupported language, empty source) blocks
the transition; compile and runtime failures do not.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .access import AccessGuard, Action, Actor, Resource, Role, Session
from .errors import (
    DeadlinePassed,
    ExecutionRejected,
    LocalValidationError,
    MalformedRequest,
    OutOfRange,
    RecordExists,
    RecordNotFound,
    StateConflictError,
    UnsupportedLanguage,
)
from .executor import ExecutionOrchestrator, ExecutionRequest, ExecutionResult, LanguageRegistry
from .models import Assignment, AssignmentType, Subject, Submission, SubmissionStatus
from .reports import AssignmentReport, SubjectReport, assignment_report, subject_report
from .storage import RecordStore


logger = logging.getLogger(__name__)

SUBJECTS = "subjects"
ASSIGNMENTS = "assignments"
SUBMISSIONS = "submissions"

SUBMISSION_NAMESPACE = uuid.UUID("6f1c9a52-3c1e-4d0b-9a57-2f4e8b1d7c30")

# Outcome codes of a graded run that make a practical submission invalid
REJECTED_EXECUTIONS = frozenset(
    {UnsupportedLanguage.code, MalformedRequest.code, LocalValidationError.code}
)

M = TypeVar("M", bound=BaseModel)


def submission_id_for(assignment_id: str, student_id: str) -> str:
    """One submission per student per assignment, with a stable id."""
    return str(uuid.uuid5(SUBMISSION_NAMESPACE, f"{assignment_id}/{student_id}"))


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


class SubmissionService:
    """Owns subjects, assignments and the submission state machine."""

    def __init__(
        self,
        store: RecordStore,
        registry: LanguageRegistry,
        orchestrator: Optional[ExecutionOrchestrator] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.orchestrator = orchestrator
        self.guard = AccessGuard(self.teaches_subject)
        self._now = now or (lambda: datetime.now(timezone.utc))

    # -- store helpers -------------------------------------------------

    def _find(self, kind: str, record_id: str, model: Type[M]) -> Optional[M]:
        try:
            return model.model_validate(self.store.get(kind, record_id))
        except RecordNotFound:
            return None

    def _update(
        self,
        session: Session,
        action: Action,
        kind: str,
        record_id: str,
        fn: Callable[[dict], dict],
    ) -> dict:
        try:
            return self.store.update(kind, record_id, fn)
        except RecordNotFound:
            # Unauthenticated callers learn nothing about which ids exist
            self.guard.require(session, action, Resource.missing())
            raise

    def _assignment_for(self, session: Session, action: Action, submission: Submission) -> Assignment:
        assignment = self._find(ASSIGNMENTS, submission.assignment_id, Assignment)
        if assignment is None:
            self.guard.require(session, action, Resource.missing())
        return assignment

    @staticmethod
    def _resource(submission: Submission, assignment: Assignment) -> Resource:
        return Resource(owner_id=submission.student_id, subject_id=assignment.subject_id)

    # -- subjects ------------------------------------------------------

    def teaches_subject(self, actor: Actor, subject_id: str) -> bool:
        """Capability check consumed by the access guard."""
        if actor.role is Role.HOD:
            return True
        subject = self._find(SUBJECTS, subject_id, Subject)
        return subject is not None and actor.user_id in subject.teacher_ids

    def create_subject(
        self,
        session: Session,
        name: str,
        code: str,
        teacher_ids: Iterable[str] = (),
        subject_id: Optional[str] = None,
    ) -> Subject:
        actor = self.guard.require(session, Action.MANAGE_SUBJECT)
        subject = Subject(
            id=subject_id or uuid.uuid4().hex,
            name=name,
            code=code,
            teacher_ids=sorted(set(teacher_ids)),
        )
        self.store.create(SUBJECTS, subject.id, _dump(subject))
        logger.info("Subject %s (%s) created by %s", subject.id, subject.code, actor.user_id)
        return subject

    def assign_teachers(self, session: Session, subject_id: str, teacher_ids: Iterable[str]) -> Subject:
        self.guard.require(session, Action.MANAGE_SUBJECT)
        teachers = sorted(set(teacher_ids))

        def _assign(raw: dict) -> dict:
            subject = Subject.model_validate(raw)
            subject.teacher_ids = teachers
            return _dump(subject)

        subject = Subject.model_validate(
            self._update(session, Action.MANAGE_SUBJECT, SUBJECTS, subject_id, _assign)
        )
        logger.info("Subject %s teachers set to %s", subject_id, teachers)
        return subject

    # -- assignments ---------------------------------------------------

    def _validate_assignment(self, assignment: Assignment) -> Assignment:
        if not assignment.title.strip():
            raise MalformedRequest("Assignment title must not be empty")
        if not assignment.max_marks > 0:
            raise OutOfRange(f"max_marks must be positive, got {assignment.max_marks}")
        if assignment.type is AssignmentType.PRACTICAL:
            # Raises UnsupportedLanguage at authoring time, never at submission time
            spec = self.registry.resolve(assignment.programming_language)
            assignment.programming_language = spec.id
        assignment.deadline = _utc(assignment.deadline)
        return assignment

    def create_assignment(
        self,
        session: Session,
        subject_id: str,
        title: str,
        deadline: datetime,
        type: AssignmentType = AssignmentType.THEORY,
        programming_language: Optional[str] = None,
        max_marks: float = 100,
        description: Optional[str] = None,
        assignment_id: Optional[str] = None,
    ) -> Assignment:
        if self._find(SUBJECTS, subject_id, Subject) is None:
            resource = Resource.missing()
        else:
            resource = Resource(subject_id=subject_id)
        actor = self.guard.require(session, Action.MANAGE_ASSIGNMENT, resource)

        assignment = self._validate_assignment(
            Assignment(
                id=assignment_id or uuid.uuid4().hex,
                subject_id=subject_id,
                title=title,
                description=description,
                deadline=deadline,
                type=type,
                programming_language=programming_language,
                max_marks=max_marks,
                created_by=actor.user_id,
            )
        )
        self.store.create(ASSIGNMENTS, assignment.id, _dump(assignment))
        logger.info("Assignment %s created in subject %s by %s", assignment.id, subject_id, actor.user_id)
        return assignment

    def update_assignment(self, session: Session, assignment_id: str, **changes) -> Assignment:
        """Apply non-null ``changes`` and re-run authoring validation."""
        changes = {key: value for key, value in changes.items() if value is not None}
        unknown = (set(changes) - set(Assignment.model_fields)) | (
            {"id", "subject_id", "created_by"} & set(changes)
        )
        if unknown:
            raise MalformedRequest(f"Cannot update fields: {', '.join(sorted(unknown))}")

        def _apply(raw: dict) -> dict:
            current = Assignment.model_validate(raw)
            self.guard.require(session, Action.MANAGE_ASSIGNMENT, Resource(subject_id=current.subject_id))
            updated = Assignment.model_validate({**raw, **changes})
            return _dump(self._validate_assignment(updated))

        assignment = Assignment.model_validate(
            self._update(session, Action.MANAGE_ASSIGNMENT, ASSIGNMENTS, assignment_id, _apply)
        )
        logger.info("Assignment %s updated: %s", assignment_id, sorted(changes))
        return assignment

    def get_assignment(self, session: Session, assignment_id: str) -> Assignment:
        assignment = self._find(ASSIGNMENTS, assignment_id, Assignment)
        if assignment is None:
            self.guard.require(session, Action.VIEW_ASSIGNMENT, Resource.missing())
        self.guard.require(session, Action.VIEW_ASSIGNMENT, Resource(subject_id=assignment.subject_id))
        return assignment

    # -- submissions ---------------------------------------------------

    def get_submission(self, session: Session, submission_id: str) -> Submission:
        submission = self._find(SUBMISSIONS, submission_id, Submission)
        if submission is None:
            self.guard.require(session, Action.VIEW_SUBMISSION, Resource.missing())
        assignment = self._assignment_for(session, Action.VIEW_SUBMISSION, submission)
        self.guard.require(session, Action.VIEW_SUBMISSION, self._resource(submission, assignment))
        return submission

    def list_submissions(self, session: Session, assignment_id: str) -> List[Submission]:
        assignment = self._find(ASSIGNMENTS, assignment_id, Assignment)
        if assignment is None:
            self.guard.require(session, Action.VIEW_REPORT, Resource.missing())
        self.guard.require(session, Action.VIEW_REPORT, Resource(subject_id=assignment.subject_id))
        submissions = [Submission.model_validate(raw) for raw in self.store.list(SUBMISSIONS)]
        return [s for s in submissions if s.assignment_id == assignment_id]

    def open_draft(self, session: Session, assignment_id: str, content: str) -> Submission:
        """Save the caller's draft for ``assignment_id``, creating it on first save."""
        if not isinstance(content, str):
            raise MalformedRequest("content must be a string")
        assignment = self._find(ASSIGNMENTS, assignment_id, Assignment)
        if assignment is None:
            self.guard.require(session, Action.SAVE_DRAFT, Resource.missing())
        actor = self.guard.require(session, Action.SAVE_DRAFT, Resource(subject_id=assignment.subject_id))

        submission_id = submission_id_for(assignment.id, actor.user_id)
        draft = Submission(
            id=submission_id,
            assignment_id=assignment.id,
            student_id=actor.user_id,
            content=content,
            last_saved_at=self._now(),
        )
        try:
            self.store.create(SUBMISSIONS, submission_id, _dump(draft))
        except RecordExists:
            return self.save_draft(session, submission_id, content)
        logger.info("Submission %s created as draft for %s", submission_id, actor.user_id)
        return draft

    def save_draft(self, session: Session, submission_id: str, content: str) -> Submission:
        if not isinstance(content, str):
            raise MalformedRequest("content must be a string")
        now = self._now()

        def _save(raw: dict) -> dict:
            submission = Submission.model_validate(raw)
            self.guard.require(session, Action.SAVE_DRAFT, Resource(owner_id=submission.student_id))
            if submission.status is not SubmissionStatus.DRAFT:
                raise StateConflictError(
                    f"Submission is {submission.status.value}; its content can no longer change"
                )
            submission.content = content
            submission.last_saved_at = now
            return _dump(submission)

        return Submission.model_validate(
            self._update(session, Action.SAVE_DRAFT, SUBMISSIONS, submission_id, _save)
        )

    @staticmethod
    def _check_open(submission: Submission, assignment: Assignment, at: datetime) -> None:
        if submission.status is not SubmissionStatus.DRAFT:
            raise StateConflictError(f"Submission is already {submission.status.value}")
        if _utc(at) > _utc(assignment.deadline):
            raise DeadlinePassed(f"The deadline for {assignment.title!r} has passed")

    def submit(self, session: Session, submission_id: str, at: Optional[datetime] = None) -> Submission:
        """Move a draft to ``submitted``.

        ``at`` is the moment the student asked to submit; it defaults to now
        and is what the deadline is checked against.
        """
        now = self._now()
        requested_at = at or now

        def _submit(raw: dict) -> dict:
            submission = Submission.model_validate(raw)
            assignment = self._assignment_for(session, Action.SUBMIT, submission)
            self.guard.require(session, Action.SUBMIT, self._resource(submission, assignment))
            self._check_open(submission, assignment, requested_at)
            if (
                assignment.type is AssignmentType.PRACTICAL
                and submission.last_execution in REJECTED_EXECUTIONS
            ):
                raise ExecutionRejected(
                    f"The last run of this submission was rejected ({submission.last_execution})"
                )
            submission.status = SubmissionStatus.SUBMITTED
            submission.submitted_at = requested_at
            return _dump(submission)

        submission = Submission.model_validate(
            self._update(session, Action.SUBMIT, SUBMISSIONS, submission_id, _submit)
        )
        logger.info("Submission %s: draft -> submitted", submission_id)
        return submission

    @staticmethod
    def _resolve_marks(marks: Optional[float], rubric_scores: Optional[Dict[str, float]]) -> float:
        if rubric_scores:
            if any(not score >= 0 for score in rubric_scores.values()):
                raise OutOfRange("Rubric scores must not be negative")
            total = float(sum(rubric_scores.values()))
            if marks is not None and abs(float(marks) - total) > 1e-9:
                raise MalformedRequest("marks must equal the sum of the rubric scores")
            return total
        if marks is None:
            raise MalformedRequest("marks are required")
        return float(marks)

    def evaluate(
        self,
        session: Session,
        submission_id: str,
        marks: Optional[float] = None,
        feedback: Optional[str] = None,
        plagiarism_score: float = 0.0,
        rubric_scores: Optional[Dict[str, float]] = None,
    ) -> Submission:
        """Grade a submitted (or re-grade an evaluated) submission."""
        now = self._now()

        def _evaluate(raw: dict) -> dict:
            submission = Submission.model_validate(raw)
            assignment = self._assignment_for(session, Action.EVALUATE, submission)
            actor = self.guard.require(session, Action.EVALUATE, self._resource(submission, assignment))
            if submission.status is SubmissionStatus.DRAFT:
                raise StateConflictError("Only submitted work can be evaluated")
            total = self._resolve_marks(marks, rubric_scores)
            if not 0 <= total <= assignment.max_marks:
                raise OutOfRange(f"marks must be between 0 and {assignment.max_marks:g}, got {total:g}")
            if not 0.0 <= plagiarism_score <= 1.0:
                raise OutOfRange(f"plagiarism_score must be between 0 and 1, got {plagiarism_score}")

            previous = submission.status
            submission.status = SubmissionStatus.EVALUATED
            submission.marks = total
            submission.feedback = feedback
            submission.plagiarism_score = float(plagiarism_score)
            submission.rubric_scores = dict(rubric_scores) if rubric_scores else None
            submission.evaluated_at = now
            submission.grader_id = actor.user_id
            logger.info(
                "Submission %s: %s -> evaluated by %s (marks=%g)",
                submission_id,
                previous.value,
                actor.user_id,
                total,
            )
            return _dump(submission)

        return Submission.model_validate(
            self._update(session, Action.EVALUATE, SUBMISSIONS, submission_id, _evaluate)
        )

    def record_execution(self, session: Session, submission_id: str, outcome_code: str) -> Submission:
        """Remember the outcome of the latest graded run of a draft."""

        def _record(raw: dict) -> dict:
            submission = Submission.model_validate(raw)
            self.guard.require(session, Action.RECORD_EXECUTION, Resource(owner_id=submission.student_id))
            if submission.status is not SubmissionStatus.DRAFT:
                raise StateConflictError(f"Submission is already {submission.status.value}")
            submission.last_execution = outcome_code
            return _dump(submission)

        return Submission.model_validate(
            self._update(session, Action.RECORD_EXECUTION, SUBMISSIONS, submission_id, _record)
        )

    # -- execution -----------------------------------------------------

    def _require_orchestrator(self) -> ExecutionOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("No execution orchestrator configured")
        return self.orchestrator

    async def run_code(
        self, session: Session, language_id: str, source_code: str, stdin: Optional[str] = None
    ) -> ExecutionResult:
        """Ad-hoc run from the editor.  Never touches a submission."""
        self.guard.require(session, Action.RUN)
        return await self._require_orchestrator().run(
            ExecutionRequest(language_id=language_id, source_code=source_code, stdin=stdin)
        )

    async def _run_graded(
        self, session: Session, submission: Submission, assignment: Assignment
    ) -> ExecutionResult:
        orchestrator = self._require_orchestrator()
        request = ExecutionRequest(
            language_id=assignment.programming_language or "",
            source_code=submission.content or "",
            graded=True,
        )
        try:
            result = await orchestrator.run(request)
        except LocalValidationError as exc:
            self.record_execution(session, submission.id, exc.code)
            raise
        # Only reached when the run was not cancelled
        self.record_execution(session, submission.id, result.outcome.value)
        return result

    async def execute_submission(self, session: Session, submission_id: str) -> ExecutionResult:
        """Run a practical draft with the graded deadline and record the outcome."""
        submission = self.get_submission(session, submission_id)
        assignment = self._assignment_for(session, Action.RECORD_EXECUTION, submission)
        self.guard.require(session, Action.RECORD_EXECUTION, self._resource(submission, assignment))
        if assignment.type is not AssignmentType.PRACTICAL:
            raise MalformedRequest("Only practical assignments are executed")
        if submission.status is not SubmissionStatus.DRAFT:
            raise StateConflictError(f"Submission is already {submission.status.value}")
        return await self._run_graded(session, submission, assignment)

    async def finalize(
        self, session: Session, submission_id: str
    ) -> Tuple[Submission, Optional[ExecutionResult]]:
        """Submit a draft, executing it first when the assignment is practical.

        The deadline is checked against the moment this call started, so a
        slow graded run cannot push an on-time submission past the deadline.
        """
        requested_at = self._now()
        submission = self.get_submission(session, submission_id)
        assignment = self._assignment_for(session, Action.SUBMIT, submission)
        self.guard.require(session, Action.SUBMIT, self._resource(submission, assignment))
        self._check_open(submission, assignment, requested_at)

        execution = None
        if assignment.type is AssignmentType.PRACTICAL:
            execution = await self._run_graded(session, submission, assignment)
        return self.submit(session, submission_id, at=requested_at), execution

    # -- reports -------------------------------------------------------

    def report(self, session: Session, assignment_id: str) -> AssignmentReport:
        submissions = self.list_submissions(session, assignment_id)
        assignment = self._find(ASSIGNMENTS, assignment_id, Assignment)
        return assignment_report(assignment, submissions)

    def subject_report(self, session: Session, subject_id: str) -> SubjectReport:
        if self._find(SUBJECTS, subject_id, Subject) is None:
            self.guard.require(session, Action.VIEW_REPORT, Resource.missing())
        self.guard.require(session, Action.VIEW_REPORT, Resource(subject_id=subject_id))
        assignments = [
            Assignment.model_validate(raw)
            for raw in self.store.list(ASSIGNMENTS)
            if raw.get("subject_id") == subject_id
        ]
        submissions = [Submission.model_validate(raw) for raw in self.store.list(SUBMISSIONS)]
        return subject_report(
            subject_id, (assignment_report(a, submissions) for a in assignments)
        )
