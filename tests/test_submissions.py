"""
Tests for the submission state machine and assignment authoring.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from conftest import NOW, ScriptedClient
from labsubmit.access import Session
from labsubmit.errors import (
    AuthorizationError,
    DeadlinePassed,
    DenialReason,
    ExecutionRejected,
    MalformedRequest,
    OutOfRange,
    StateConflictError,
    TransportError,
    UnsupportedLanguage,
)
from labsubmit.executor import ExecutionOrchestrator, LanguageRegistry, LanguageSpec, Outcome, RetryPolicy
from labsubmit.models import AssignmentType, SubmissionStatus
from labsubmit.submissions import SUBMISSIONS, SubmissionService, submission_id_for


class TestAssignments:
    def test_practical_language_validated_at_authoring(self, service, teacher, subject):
        with pytest.raises(UnsupportedLanguage):
            service.create_assignment(
                teacher,
                subject_id=subject.id,
                title="Ruby kata",
                deadline=NOW,
                type=AssignmentType.PRACTICAL,
                programming_language="ruby",
            )

    def test_update_revalidates_language(self, service, teacher, practical):
        with pytest.raises(UnsupportedLanguage):
            service.update_assignment(teacher, practical.id, programming_language="ruby")
        assert service.get_assignment(teacher, practical.id).programming_language == "python"

    def test_update_applies_changes(self, service, teacher, theory):
        updated = service.update_assignment(teacher, theory.id, max_marks=25, title="Hashing essay")
        assert updated.max_marks == 25
        assert updated.title == "Hashing essay"

    def test_update_rejects_protected_fields(self, service, teacher, theory):
        with pytest.raises(MalformedRequest):
            service.update_assignment(teacher, theory.id, subject_id="other")

    def test_max_marks_must_be_positive(self, service, teacher, subject):
        with pytest.raises(OutOfRange):
            service.create_assignment(teacher, subject_id=subject.id, title="x", deadline=NOW, max_marks=0)

    def test_unassigned_teacher_cannot_author(self, service, subject):
        with pytest.raises(AuthorizationError) as info:
            service.create_assignment(
                Session.of("teacher-9", "teacher"), subject_id=subject.id, title="x", deadline=NOW
            )
        assert info.value.reason is DenialReason.NOT_OWNER


class TestDrafts:
    def test_first_save_creates_draft(self, service, student, theory, now):
        submission = service.open_draft(student, theory.id, "x")
        assert submission.id == submission_id_for(theory.id, "student-1")
        assert submission.status is SubmissionStatus.DRAFT
        assert submission.last_saved_at == now.value
        assert submission.marks is None and submission.feedback is None
        assert submission.plagiarism_score == 0.0

    def test_round_trip_save_reload_save(self, service, student, theory, now):
        first = service.open_draft(student, theory.id, "x")
        reloaded = service.get_submission(student, first.id)
        assert reloaded.status is SubmissionStatus.DRAFT and reloaded.content == "x"

        now.advance(minutes=5)
        second = service.save_draft(student, first.id, "y")
        assert second.status is SubmissionStatus.DRAFT
        assert second.content == "y"
        assert second.last_saved_at == NOW + timedelta(minutes=5)
        assert service.get_submission(student, first.id).content == "y"

    def test_open_draft_again_resaves(self, service, student, theory):
        service.open_draft(student, theory.id, "x")
        again = service.open_draft(student, theory.id, "y")
        assert again.content == "y"

    def test_other_student_cannot_save(self, service, student, other_student, theory):
        draft = service.open_draft(student, theory.id, "x")
        with pytest.raises(AuthorizationError) as info:
            service.save_draft(other_student, draft.id, "stolen")
        assert info.value.reason is DenialReason.NOT_OWNER
        assert service.get_submission(student, draft.id).content == "x"

    def test_no_saves_after_submit(self, service, student, theory):
        draft = service.open_draft(student, theory.id, "x")
        service.submit(student, draft.id)
        with pytest.raises(StateConflictError):
            service.save_draft(student, draft.id, "late edit")
        assert service.get_submission(student, draft.id).content == "x"

    def test_missing_submission_is_not_found(self, service, student):
        with pytest.raises(AuthorizationError) as info:
            service.save_draft(student, "does-not-exist", "x")
        assert info.value.reason is DenialReason.NOT_FOUND


class TestSubmit:
    def test_submit_before_deadline(self, service, student, theory, now):
        draft = service.open_draft(student, theory.id, "x")
        submitted = service.submit(student, draft.id)
        assert submitted.status is SubmissionStatus.SUBMITTED
        assert submitted.submitted_at == now.value

    def test_submit_at_deadline_is_on_time(self, service, student, theory, now):
        draft = service.open_draft(student, theory.id, "x")
        now.value = theory.deadline
        assert service.submit(student, draft.id).status is SubmissionStatus.SUBMITTED

    def test_submit_after_deadline_fails_without_mutation(self, service, student, theory, now):
        draft = service.open_draft(student, theory.id, "x")
        now.value = theory.deadline + timedelta(seconds=1)
        with pytest.raises(DeadlinePassed):
            service.submit(student, draft.id)
        stored = service.get_submission(student, draft.id)
        assert stored.status is SubmissionStatus.DRAFT
        assert stored.content == "x"
        assert stored.last_saved_at == draft.last_saved_at
        assert stored.submitted_at is None

    def test_submit_twice_conflicts(self, service, student, theory):
        draft = service.open_draft(student, theory.id, "x")
        service.submit(student, draft.id)
        with pytest.raises(StateConflictError):
            service.submit(student, draft.id)

    def test_only_owner_submits(self, service, student, other_student, theory):
        draft = service.open_draft(student, theory.id, "x")
        with pytest.raises(AuthorizationError) as info:
            service.submit(other_student, draft.id)
        assert info.value.reason is DenialReason.NOT_OWNER

    def test_concurrent_submits_exactly_one_wins(self, service, student, theory):
        draft = service.open_draft(student, theory.id, "x")
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                service.submit(student, draft.id)
                result = "ok"
            except StateConflictError:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 7

    def test_unsupported_language_run_blocks_practical_submit(self, service, student, practical):
        draft = service.open_draft(student, practical.id, "print(1)")
        service.record_execution(student, draft.id, UnsupportedLanguage.code)
        with pytest.raises(ExecutionRejected):
            service.submit(student, draft.id)
        assert service.get_submission(student, draft.id).status is SubmissionStatus.DRAFT

    def test_runtime_error_does_not_block_submit(self, service, student, practical):
        draft = service.open_draft(student, practical.id, "1/0")
        service.record_execution(student, draft.id, Outcome.RUNTIME_ERROR.value)
        assert service.submit(student, draft.id).status is SubmissionStatus.SUBMITTED


class TestEvaluate:
    @pytest.fixture
    def submitted(self, service, student, theory):
        draft = service.open_draft(student, theory.id, "x")
        return service.submit(student, draft.id)

    def test_evaluate(self, service, teacher, submitted, now):
        evaluated = service.evaluate(teacher, submitted.id, marks=8, feedback="Good", plagiarism_score=0.1)
        assert evaluated.status is SubmissionStatus.EVALUATED
        assert evaluated.marks == 8
        assert evaluated.feedback == "Good"
        assert evaluated.plagiarism_score == 0.1
        assert evaluated.grader_id == "teacher-1"
        assert evaluated.evaluated_at == now.value

    def test_marks_above_max_fail_without_mutation(self, service, teacher, student, submitted):
        with pytest.raises(OutOfRange):
            service.evaluate(teacher, submitted.id, marks=11, feedback="Too generous")
        stored = service.get_submission(student, submitted.id)
        assert stored.status is SubmissionStatus.SUBMITTED
        assert stored.marks is None and stored.feedback is None

    def test_negative_marks_rejected(self, service, teacher, submitted):
        with pytest.raises(OutOfRange):
            service.evaluate(teacher, submitted.id, marks=-1)

    def test_plagiarism_score_range(self, service, teacher, submitted):
        with pytest.raises(OutOfRange):
            service.evaluate(teacher, submitted.id, marks=5, plagiarism_score=1.5)

    def test_draft_cannot_be_evaluated(self, service, teacher, student, theory):
        draft = service.open_draft(student, theory.id, "x")
        with pytest.raises(StateConflictError):
            service.evaluate(teacher, draft.id, marks=5)
        assert service.get_submission(student, draft.id).status is SubmissionStatus.DRAFT

    def test_student_cannot_evaluate(self, service, student, submitted):
        with pytest.raises(AuthorizationError) as info:
            service.evaluate(student, submitted.id, marks=10)
        assert info.value.reason is DenialReason.INSUFFICIENT_ROLE

    def test_hod_may_evaluate_any_subject(self, service, hod, submitted):
        assert service.evaluate(hod, submitted.id, marks=7).grader_id == "hod-1"

    def test_re_evaluation_overwrites_and_keeps_status(self, service, teacher, submitted):
        service.evaluate(teacher, submitted.id, marks=5, feedback="ok")
        corrected = service.evaluate(teacher, submitted.id, marks=9, feedback="regraded")
        assert corrected.status is SubmissionStatus.EVALUATED
        assert corrected.marks == 9
        assert corrected.feedback == "regraded"

    def test_rubric_scores_sum_to_marks(self, service, teacher, submitted):
        evaluated = service.evaluate(teacher, submitted.id, rubric_scores={"logic": 4, "style": 3})
        assert evaluated.marks == 7
        assert evaluated.rubric_scores == {"logic": 4, "style": 3}

    def test_rubric_sum_checked_against_max(self, service, teacher, submitted):
        with pytest.raises(OutOfRange):
            service.evaluate(teacher, submitted.id, rubric_scores={"logic": 8, "style": 8})

    def test_status_never_moves_backward(self, service, teacher, student, submitted):
        service.evaluate(teacher, submitted.id, marks=5)
        with pytest.raises(StateConflictError):
            service.submit(student, submitted.id)
        with pytest.raises(StateConflictError):
            service.save_draft(student, submitted.id, "rewrite")
        assert service.get_submission(student, submitted.id).status is SubmissionStatus.EVALUATED


class TestExecution:
    def test_finalize_runs_practical_before_submit(self, service, student, practical, client):
        draft = service.open_draft(student, practical.id, "print('hello')")
        submission, execution = asyncio.run(service.finalize(student, draft.id))
        assert execution.outcome is Outcome.SUCCESS
        assert submission.status is SubmissionStatus.SUBMITTED
        assert submission.last_execution == "success"
        assert client.calls[0]["deadline"] == 20.0

    def test_finalize_theory_does_not_execute(self, service, student, theory, client):
        draft = service.open_draft(student, theory.id, "essay text")
        submission, execution = asyncio.run(service.finalize(student, draft.id))
        assert execution is None
        assert submission.status is SubmissionStatus.SUBMITTED
        assert client.calls == []

    def test_finalize_past_deadline_skips_network(self, service, student, practical, client, now):
        draft = service.open_draft(student, practical.id, "print(1)")
        now.advance(days=2)
        with pytest.raises(DeadlinePassed):
            asyncio.run(service.finalize(student, draft.id))
        assert client.calls == []

    def test_backend_outage_still_allows_submit(self, store, registry, now, student, practical):
        client = ScriptedClient([TransportError("down")] * 3)

        async def no_sleep(delay):
            return None

        orchestrator = ExecutionOrchestrator(registry, client, RetryPolicy(), sleep=no_sleep)
        service = SubmissionService(store, registry, orchestrator, now=now)
        draft = service.open_draft(student, practical.id, "print(1)")

        submission, execution = asyncio.run(service.finalize(student, draft.id))

        assert execution.outcome is Outcome.BACKEND_UNAVAILABLE
        assert submission.status is SubmissionStatus.SUBMITTED

    def test_empty_practical_is_recorded_and_rejected(self, service, student, practical):
        draft = service.open_draft(student, practical.id, "")
        with pytest.raises(MalformedRequest):
            asyncio.run(service.finalize(student, draft.id))
        stored = service.get_submission(student, draft.id)
        assert stored.status is SubmissionStatus.DRAFT
        assert stored.last_execution == "malformed_request"
        with pytest.raises(ExecutionRejected):
            service.submit(student, draft.id)

    def test_unsupported_language_after_registry_change(self, store, now, student, practical, clock):
        # New snapshot without python: the assignment was valid when authored
        registry = LanguageRegistry([LanguageSpec("javascript", "javascript", "18.15.0")])
        client = ScriptedClient()
        service = SubmissionService(
            store, registry, ExecutionOrchestrator(registry, client, RetryPolicy(), clock=clock), now=now
        )
        draft = service.open_draft(student, practical.id, "print(1)")

        with pytest.raises(UnsupportedLanguage):
            asyncio.run(service.execute_submission(student, draft.id))

        assert client.calls == []
        assert service.get_submission(student, draft.id).last_execution == "unsupported_language"
        with pytest.raises(ExecutionRejected):
            service.submit(student, draft.id)

    def test_ad_hoc_run_does_not_touch_submissions(self, service, student, store):
        result = asyncio.run(service.run_code(student, "python", "print('hello')"))
        assert result.ok
        assert store.list(SUBMISSIONS) == []

    def test_cancelled_graded_run_records_nothing(self, store, registry, now, student, practical):
        started = asyncio.Event()

        class HangingClient:
            async def execute(self, spec, source_code, stdin, deadline):
                started.set()
                await asyncio.sleep(60)

        service = SubmissionService(
            store, registry, ExecutionOrchestrator(registry, HangingClient(), RetryPolicy()), now=now
        )
        draft = service.open_draft(student, practical.id, "print(1)")

        async def scenario():
            task = asyncio.create_task(service.execute_submission(student, draft.id))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert service.get_submission(student, draft.id).last_execution is None
