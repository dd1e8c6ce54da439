"""
Integration Tests for the Run Pipeline

Tests batch and single-case runs end to end through EvaluatorService,
using the mock store and a scripted model client. These tests validate
ordering, error isolation, cancellation and finalization without
requiring an LLM or a database.
"""

import asyncio
import pytest

from tests.mocks.mock_model_client import JUDGE_MODEL, TARGET_MODEL, message_text


CRITERIA = (
    {"name": "accuracy", "prompt": "Q={{input}} A={{output}}", "weight": 3},
    {"name": "tone", "prompt": "Tone of {{output}}", "weight": 1},
)


class TestBatchRun:
    """Tests for start_batch_run() and the background loop."""

    @pytest.mark.asyncio
    async def test_run_without_judge_passes_everything(self, evaluator_service, seed_evaluation, mock_db_service):
        """No judge means empty scores, a perfect average and a pass."""
        from src.workbench.models import EvaluationStatus

        evaluation, test_cases, _ = seed_evaluation()

        run = await evaluator_service.start_batch_run(evaluation.id)
        assert run.status == EvaluationStatus.running
        assert run.started_at is not None

        final = await evaluator_service.wait_for_run(run.id)

        assert final.status == EvaluationStatus.completed
        assert final.completed_at is not None
        assert final.error_message is None
        assert final.results.summary == "2/2 passed (100%)"
        assert final.results.pass_rate == 100

        results = await mock_db_service.list_results(run.id)
        assert [r.test_case_id for r in results] == [tc.id for tc in test_cases]
        assert all(r.passed and r.scores == {} for r in results)

        stored = await mock_db_service.get_evaluation(evaluation.id)
        assert stored.status == EvaluationStatus.completed
        assert stored.results.summary == "2/2 passed (100%)"

    @pytest.mark.asyncio
    async def test_results_follow_test_case_order(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """Cases run sequentially in order_index order."""
        evaluation, test_cases, _ = seed_evaluation(inputs=("one", "two", "three", "four"))

        run = await evaluator_service.start_batch_run(evaluation.id)
        await evaluator_service.wait_for_run(run.id)

        sent = [message_text(c["messages"]) for c in model_client.target_calls()]
        assert sent == ["one", "two", "three", "four"]
        results = await mock_db_service.list_results(run.id)
        assert [r.test_case_id for r in results] == [tc.id for tc in test_cases]

    @pytest.mark.asyncio
    async def test_judge_scores_and_token_totals(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """Judge scores are normalized, aggregated per criterion and tokens summed."""
        from src.workbench.models import EvaluationConfig

        model_client.judge_reply = lambda prompt: '{"score": 9, "reason": "good"}' if prompt.startswith("Q=") else '{"score": 3}'
        evaluation, _, _ = seed_evaluation(
            judge_model_id=JUDGE_MODEL,
            criteria=CRITERIA,
            config=EvaluationConfig(pass_threshold=0.7),
        )

        run = await evaluator_service.start_batch_run(evaluation.id)
        final = await evaluator_service.wait_for_run(run.id)

        results = await mock_db_service.list_results(run.id)
        # (0.9 * 3 + 0.3 * 1) / 4 = 0.75
        assert all(r.passed for r in results)
        assert results[0].scores == {"accuracy": pytest.approx(0.9), "tone": pytest.approx(0.3)}
        assert results[0].ai_feedback == {"accuracy": "good", "tone": ""}
        assert final.results.scores == {"accuracy": pytest.approx(0.9), "tone": pytest.approx(0.3)}
        assert final.total_tokens_input == 20
        assert final.total_tokens_output == 10

    @pytest.mark.asyncio
    async def test_threshold_fails_low_scores(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """Average below the default threshold of 0.6 fails the case."""
        model_client.judge_reply = '{"score": 5}'
        evaluation, _, _ = seed_evaluation(inputs=("only",), judge_model_id=JUDGE_MODEL, criteria=CRITERIA[:1])

        run = await evaluator_service.start_batch_run(evaluation.id)
        final = await evaluator_service.wait_for_run(run.id)

        results = await mock_db_service.list_results(run.id)
        assert results[0].passed is False
        assert final.status.value == "completed"
        assert final.results.summary == "0/1 passed (0%)"

    @pytest.mark.asyncio
    async def test_disabled_criteria_not_judged(self, evaluator_service, seed_evaluation, model_client):
        evaluation, _, _ = seed_evaluation(
            inputs=("only",),
            judge_model_id=JUDGE_MODEL,
            criteria=({"name": "accuracy", "prompt": "x", "enabled": False},),
        )

        run = await evaluator_service.start_batch_run(evaluation.id)
        await evaluator_service.wait_for_run(run.id)

        assert model_client.judge_calls() == []

    @pytest.mark.asyncio
    async def test_case_error_is_isolated(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """A failing target call fails only its own case."""
        from src.workbench.models import EvaluationStatus

        model_client.fail_on = ["explode"]
        evaluation, test_cases, _ = seed_evaluation(inputs=("fine", "please explode", "also fine"))

        run = await evaluator_service.start_batch_run(evaluation.id)
        final = await evaluator_service.wait_for_run(run.id)

        results = await mock_db_service.list_results(run.id)
        assert len(results) == 3
        assert [r.passed for r in results] == [True, False, True]
        assert "upstream returned 500" in results[1].error_message
        assert results[1].model_output == ""
        assert final.status == EvaluationStatus.completed
        assert final.results.summary == "2/3 passed (67%)"

    @pytest.mark.asyncio
    async def test_prompt_template_and_parameters_used(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """Linked prompt content is the template; inherited parameters are sent."""
        from src.workbench.models import EvaluationConfig, ModelParameters, Prompt

        prompt = Prompt(name="p", content="You help {{who}}.", model_parameters=ModelParameters(temperature=0.1))
        await mock_db_service.create_prompt(prompt)
        evaluation, test_cases, _ = seed_evaluation(
            inputs=("Hi",),
            prompt_id=prompt.id,
            config=EvaluationConfig(inherited_from_prompt=True, model_parameters=ModelParameters(temperature=0.9)),
        )
        tc = mock_db_service._testcases[test_cases[0].id]
        tc.input_variables = {"who": "students"}

        run = await evaluator_service.start_batch_run(evaluation.id)
        final = await evaluator_service.wait_for_run(run.id)

        call = model_client.target_calls()[0]
        assert call["model_id"] == TARGET_MODEL
        assert message_text(call["messages"]) == "You help students.\n\nHi"
        assert call["params"].temperature == 0.1
        assert final.model_parameters.temperature == 0.1

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_result(self, evaluator_service, seed_evaluation, mock_db_service):
        """A failed result write is logged; the run still completes with the in-memory results."""
        from src.workbench.errors import PersistenceError
        from src.workbench.models import EvaluationStatus

        mock_db_service.fail_append_result = PersistenceError("disk full")
        evaluation, _, _ = seed_evaluation()

        run = await evaluator_service.start_batch_run(evaluation.id)
        final = await evaluator_service.wait_for_run(run.id)

        assert final.status == EvaluationStatus.completed
        assert final.results.total_cases == 2
        assert await mock_db_service.list_results(run.id) == []

    @pytest.mark.asyncio
    async def test_cache_invalidated_after_run(self, evaluator_service, workspace_service, seed_evaluation):
        """The detail view reloads after the run finishes."""
        evaluation, _, _ = seed_evaluation()
        before = await workspace_service.get_detail(evaluation.id)
        assert before.runs == []

        run = await evaluator_service.start_batch_run(evaluation.id)
        # Run start is reflected in the cached detail
        assert before.runs[0].id == run.id
        await evaluator_service.wait_for_run(run.id)

        assert evaluation.id not in evaluator_service.session_cache
        after = await workspace_service.get_detail(evaluation.id)
        assert after is not before
        assert after.selected_run_id == run.id
        assert after.runs[0].status.value == "completed"
        assert len(after.results) == 2

    @pytest.mark.asyncio
    async def test_token_released_after_run(self, evaluator_service, seed_evaluation):
        evaluation, _, _ = seed_evaluation()

        run = await evaluator_service.start_batch_run(evaluation.id)
        assert evaluator_service.is_active(run.id)
        await evaluator_service.wait_for_run(run.id)
        await asyncio.sleep(0)

        assert run.id not in evaluator_service.cancellation
        assert not evaluator_service.is_active(run.id)


class TestRunPreconditions:
    """Tests for validation before a run is created."""

    @pytest.mark.asyncio
    async def test_unknown_evaluation(self, evaluator_service):
        from src.workbench.errors import NotFoundError

        with pytest.raises(NotFoundError):
            await evaluator_service.start_batch_run("eval_missing")

    @pytest.mark.asyncio
    async def test_missing_model(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.errors import EvaluationValidationError

        evaluation, _, _ = seed_evaluation(model_id=None)

        with pytest.raises(EvaluationValidationError):
            await evaluator_service.start_batch_run(evaluation.id)
        assert mock_db_service._runs == {}

    @pytest.mark.asyncio
    async def test_no_test_cases(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.errors import EvaluationValidationError

        evaluation, _, _ = seed_evaluation(inputs=())

        with pytest.raises(EvaluationValidationError):
            await evaluator_service.start_batch_run(evaluation.id)
        assert mock_db_service._runs == {}

    @pytest.mark.asyncio
    async def test_dirty_evaluation_blocked(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.errors import EvaluationValidationError

        evaluation, test_cases, _ = seed_evaluation()
        evaluator_service.drafts.mark_dirty(evaluation.id)

        with pytest.raises(EvaluationValidationError):
            await evaluator_service.start_batch_run(evaluation.id)
        with pytest.raises(EvaluationValidationError):
            await evaluator_service.start_single_case_run(evaluation.id, test_cases[0].id)
        assert mock_db_service._runs == {}


class TestStopRun:
    """Tests for stop_run() and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_stop_before_first_case(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """Stopping right after start leaves zero results and a failed run."""
        from src.workbench.models import EvaluationStatus

        evaluation, _, _ = seed_evaluation()

        run = await evaluator_service.start_batch_run(evaluation.id)
        stopped = await evaluator_service.stop_run(run.id)

        assert stopped.status == EvaluationStatus.failed
        assert stopped.error_message == "evaluation aborted"
        assert stopped.completed_at is not None

        final = await evaluator_service.wait_for_run(run.id)
        assert final.status == EvaluationStatus.failed
        assert final.error_message == "evaluation aborted"
        assert await mock_db_service.list_results(run.id) == []
        assert model_client.target_calls() == []

        stored = await mock_db_service.get_evaluation(evaluation.id)
        assert stored.status == EvaluationStatus.failed

    @pytest.mark.asyncio
    async def test_stop_during_in_flight_call(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """The in-flight case finishes; no further case starts."""
        from src.workbench.models import EvaluationStatus

        model_client.gate = asyncio.Event()
        evaluation, test_cases, _ = seed_evaluation(inputs=("first", "second", "third"))

        run = await evaluator_service.start_batch_run(evaluation.id)
        await asyncio.wait_for(model_client.target_started.wait(), timeout=5)

        stopped = await evaluator_service.stop_run(run.id)
        assert stopped.status == EvaluationStatus.failed

        model_client.gate.set()
        final = await evaluator_service.wait_for_run(run.id)

        assert final.status == EvaluationStatus.failed
        assert final.error_message == "evaluation aborted"
        assert final.completed_at is not None
        results = await mock_db_service.list_results(run.id)
        assert [r.test_case_id for r in results] == [test_cases[0].id]
        assert len(model_client.target_calls()) == 1
        # Partial summary is still recorded
        assert final.results.total_cases == 1

    @pytest.mark.asyncio
    async def test_stop_unknown_run(self, evaluator_service):
        assert await evaluator_service.stop_run("run_missing") is None

    @pytest.mark.asyncio
    async def test_stop_finished_run_rejected(self, evaluator_service, seed_evaluation):
        from src.workbench.errors import EvaluationValidationError

        evaluation, _, _ = seed_evaluation()
        run = await evaluator_service.start_batch_run(evaluation.id)
        await evaluator_service.wait_for_run(run.id)

        with pytest.raises(EvaluationValidationError):
            await evaluator_service.stop_run(run.id)


class TestSingleCaseRun:
    """Tests for start_single_case_run()."""

    @pytest.mark.asyncio
    async def test_single_case_passed(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.models import EvaluationStatus

        evaluation, test_cases, _ = seed_evaluation()

        run = await evaluator_service.start_single_case_run(evaluation.id, test_cases[1].id)

        assert run.status == EvaluationStatus.completed
        assert run.results.summary == "Single test complete, passed"
        results = await mock_db_service.list_results(run.id)
        assert [r.test_case_id for r in results] == [test_cases[1].id]

    @pytest.mark.asyncio
    async def test_single_case_not_passed(self, evaluator_service, seed_evaluation, model_client):
        model_client.judge_reply = '{"score": 1}'
        evaluation, test_cases, _ = seed_evaluation(judge_model_id=JUDGE_MODEL, criteria=CRITERIA)

        run = await evaluator_service.start_single_case_run(evaluation.id, test_cases[0].id)

        assert run.status.value == "completed"
        assert run.results.summary == "Single test complete, not passed"

    @pytest.mark.asyncio
    async def test_single_case_error_fails_run(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """A case error fails the single-case run with that error message."""
        from src.workbench.models import EvaluationStatus

        model_client.fail_on = ["2+2"]
        evaluation, test_cases, _ = seed_evaluation()

        run = await evaluator_service.start_single_case_run(evaluation.id, test_cases[0].id)

        assert run.status == EvaluationStatus.failed
        assert "upstream returned 500" in run.error_message
        stored = await mock_db_service.get_evaluation(evaluation.id)
        assert stored.status == EvaluationStatus.failed

    @pytest.mark.asyncio
    async def test_single_case_stopped_mid_call(self, evaluator_service, seed_evaluation, mock_db_service, model_client):
        """A stop during the model call fails the run with the aborted summary."""
        from src.workbench.models import EvaluationStatus

        model_client.gate = asyncio.Event()
        evaluation, test_cases, _ = seed_evaluation()

        pending = asyncio.create_task(evaluator_service.start_single_case_run(evaluation.id, test_cases[0].id))
        await asyncio.wait_for(model_client.target_started.wait(), timeout=5)
        (run_id,) = mock_db_service._runs.keys()

        await evaluator_service.stop_run(run_id)
        model_client.gate.set()
        run = await asyncio.wait_for(pending, timeout=5)

        assert run.status == EvaluationStatus.failed
        assert run.error_message == "evaluation aborted"
        assert run.results.summary == "Single test aborted"
        assert run.results.total_cases == 1

    @pytest.mark.asyncio
    async def test_unknown_test_case(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.errors import NotFoundError

        evaluation, _, _ = seed_evaluation()

        with pytest.raises(NotFoundError):
            await evaluator_service.start_single_case_run(evaluation.id, "tc_missing")
        assert mock_db_service._runs == {}


class TestOrphanCleanup:
    """Tests for cleanup_orphaned_runs() at startup."""

    @pytest.mark.asyncio
    async def test_stale_runs_failed(self, evaluator_service, seed_evaluation, mock_db_service):
        from src.workbench.models import EvaluationRun, EvaluationStatus

        evaluation, _, _ = seed_evaluation()
        pending = EvaluationRun(evaluation_id=evaluation.id)
        running = EvaluationRun(evaluation_id=evaluation.id).transition_to(EvaluationStatus.running)
        done = EvaluationRun(evaluation_id=evaluation.id).transition_to(EvaluationStatus.running).transition_to(EvaluationStatus.completed)
        for run in (pending, running, done):
            mock_db_service._runs[run.id] = run

        count = await evaluator_service.cleanup_orphaned_runs()

        assert count == 2
        for run_id in (pending.id, running.id):
            stored = await mock_db_service.get_run(run_id)
            assert stored.status == EvaluationStatus.failed
            assert stored.error_message == "server restarted while run was in progress"
            assert stored.completed_at is not None
        assert (await mock_db_service.get_run(done.id)).status == EvaluationStatus.completed
        assert (await mock_db_service.get_evaluation(evaluation.id)).status == EvaluationStatus.failed

    @pytest.mark.asyncio
    async def test_no_orphans(self, evaluator_service):
        assert await evaluator_service.cleanup_orphaned_runs() == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_runs(self, evaluator_service, seed_evaluation, model_client):
        """Shutdown cancels background tasks; their runs are left for the next cleanup."""
        from src.workbench.models import EvaluationStatus

        model_client.gate = asyncio.Event()
        evaluation, _, _ = seed_evaluation()
        run = await evaluator_service.start_batch_run(evaluation.id)
        await asyncio.wait_for(model_client.target_started.wait(), timeout=5)

        await evaluator_service.shutdown()
        await asyncio.sleep(0)

        assert not evaluator_service.is_active(run.id)
        assert (await evaluator_service.get_run(run.id)).status == EvaluationStatus.running
        assert await evaluator_service.cleanup_orphaned_runs() == 1
