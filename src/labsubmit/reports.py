"""Grade reports.

Aggregates are built by an explicit reduction over submissions.  Marks
figures only consider evaluated submissions; drafts and pending work are
counted but never contribute to averages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import Assignment, Submission, SubmissionStatus

# plagiarism_score above this counts as a case worth reviewing
PLAGIARISM_THRESHOLD = 0.3


@dataclass
class AssignmentReport:
    assignment_id: str
    max_marks: float
    total_submissions: int = 0
    drafts: int = 0
    submitted: int = 0
    evaluated: int = 0
    average_marks: Optional[float] = None
    average_percent: Optional[float] = None
    highest_marks: Optional[float] = None
    lowest_marks: Optional[float] = None
    plagiarism_cases: int = 0


@dataclass
class SubjectReport:
    subject_id: str
    assignments: int = 0
    total_submissions: int = 0
    evaluated: int = 0
    average_percent: Optional[float] = None
    plagiarism_cases: int = 0


def assignment_report(assignment: Assignment, submissions: Iterable[Submission]) -> AssignmentReport:
    report = AssignmentReport(assignment_id=assignment.id, max_marks=assignment.max_marks)
    marks: List[float] = []
    for submission in submissions:
        if submission.assignment_id != assignment.id:
            continue
        report.total_submissions += 1
        if submission.status is SubmissionStatus.DRAFT:
            report.drafts += 1
            continue
        if submission.status is SubmissionStatus.SUBMITTED:
            report.submitted += 1
            continue
        report.evaluated += 1
        if submission.marks is not None:
            marks.append(submission.marks)
        if submission.plagiarism_score > PLAGIARISM_THRESHOLD:
            report.plagiarism_cases += 1

    if marks:
        report.average_marks = round(sum(marks) / len(marks), 2)
        report.highest_marks = max(marks)
        report.lowest_marks = min(marks)
        if assignment.max_marks > 0:
            report.average_percent = round(100.0 * report.average_marks / assignment.max_marks, 2)
    return report


def subject_report(subject_id: str, reports: Iterable[AssignmentReport]) -> SubjectReport:
    """Fold per-assignment reports into one subject summary.

    The subject average weights each assignment's percentage by the number
    of evaluated submissions behind it.
    """
    result = SubjectReport(subject_id=subject_id)
    weighted = 0.0
    for report in reports:
        result.assignments += 1
        result.total_submissions += report.total_submissions
        result.evaluated += report.evaluated
        result.plagiarism_cases += report.plagiarism_cases
        if report.average_percent is not None:
            weighted += report.average_percent * report.evaluated
    if result.evaluated:
        result.average_percent = round(weighted / result.evaluated, 2)
    return result
