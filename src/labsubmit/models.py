"""Pydantic models for persisted records and HTTP bodies.

Records (:class:`Subject`, :class:`Assignment`, :class:`Submission`) are
stored as JSON by the record store and validated back into models on every
read.  The request/response models below them describe the HTTP API.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SubmissionStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    EVALUATED = "evaluated"


class AssignmentType(str, enum.Enum):
    THEORY = "theory"
    PRACTICAL = "practical"


class Subject(BaseModel):
    id: str
    name: str
    code: str
    teacher_ids: List[str] = Field(default_factory=list)


class Assignment(BaseModel):
    id: str
    subject_id: str
    title: str
    description: Optional[str] = None
    deadline: datetime
    type: AssignmentType = AssignmentType.THEORY
    programming_language: Optional[str] = None
    max_marks: float
    created_by: Optional[str] = None


class Submission(BaseModel):
    """One student's work on one assignment.

    ``marks``, ``feedback``, ``evaluated_at`` and ``grader_id`` stay null
    until the submission is evaluated.  ``last_execution`` holds the outcome
    code of the most recent graded execution attempt, if any.
    """

    id: str
    assignment_id: str
    student_id: str
    content: Optional[str] = None
    status: SubmissionStatus = SubmissionStatus.DRAFT
    submitted_at: Optional[datetime] = None
    last_saved_at: datetime
    marks: Optional[float] = None
    feedback: Optional[str] = None
    plagiarism_score: float = 0.0
    rubric_scores: Optional[Dict[str, float]] = None
    evaluated_at: Optional[datetime] = None
    grader_id: Optional[str] = None
    last_execution: Optional[str] = None


class LanguageInfo(BaseModel):
    id: str
    name: str
    runtime: str
    version: str


class RunRequest(BaseModel):
    """Request body for an ad-hoc run from the editor."""

    language: str = Field(..., description="Language id from /v1/languages.")
    code: str = Field(..., description="Source code to execute.")
    stdin: Optional[str] = Field(
        default=None, description="Standard input to pass to the program."
    )


class RunResponse(BaseModel):
    """Normalised execution result."""

    outcome: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    duration_ms: int
    attempts: int
    retryable: bool


class SubjectCreateRequest(BaseModel):
    name: str
    code: str
    teacher_ids: List[str] = Field(default_factory=list)


class SubjectTeachersRequest(BaseModel):
    teacher_ids: List[str]


class AssignmentCreateRequest(BaseModel):
    subject_id: str
    title: str
    description: Optional[str] = None
    deadline: datetime
    type: AssignmentType = AssignmentType.THEORY
    programming_language: Optional[str] = None
    max_marks: float = 100


class AssignmentUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    type: Optional[AssignmentType] = None
    programming_language: Optional[str] = None
    max_marks: Optional[float] = None


class DraftRequest(BaseModel):
    content: str


class EvaluateRequest(BaseModel):
    marks: Optional[float] = None
    feedback: Optional[str] = None
    plagiarism_score: float = 0.0
    rubric_scores: Optional[Dict[str, float]] = None


class SubmitResponse(BaseModel):
    submission: Submission
    execution: Optional[RunResponse] = None


class ErrorResponse(BaseModel):
    error: str
    detail: str
