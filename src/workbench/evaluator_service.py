"""
Evaluator Service: the run orchestrator.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. BATCH RUNS (Feature: batch-run)
   - start_batch_run() validates, creates the run and returns it while a
     supervised asyncio.Task works through the test cases in order
   - One failing test case becomes a failed result; the batch continues
   - Results are persisted as they complete; a failed write is logged and the
     in-memory result is kept

2. SINGLE-CASE RUNS (Feature: single-case-run)
   - start_single_case_run() executes one test case and returns the run in a
     terminal state
   - A case error fails the run with that error message

3. RUN CANCELLATION (Feature: cancel-run)
   - stop_run() flags the run's cancellation token, marks the run failed with
     ABORTED_MESSAGE and fails the owning evaluation
   - The loop notices the flag at the next test-case boundary; an in-flight
     model call is allowed to finish

4. FINALIZATION (Feature: run-lifecycle)
   - Run summary, token totals and terminal status written in one update
   - Evaluation status and results mirror the run
   - Session cache entry invalidated after the terminal write; a cached
     unsaved draft is kept and only its run fields are refreshed

5. ORPHAN RUN CLEANUP (Feature: orphan-cleanup)
   - cleanup_orphaned_runs() fails runs left pending/running by a restart

==============================================================================
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .cancellation import CancellationRegistry, CancellationToken
from .errors import EvaluationValidationError, NotFoundError
from .model_client import ModelClient, get_model_client
from .models import (
    Evaluation, EvaluationCriterion, EvaluationRun, EvaluationStatus,
    ModelParameters, RunSummary, TestCase, TestCaseResult,
)
from .scoring import (
    CaseScores, JudgeScorer, is_passed, summarize_run, summarize_single_case,
    weighted_average,
)
from .session_cache import DraftRegistry, EvaluationSessionCache
from .sqlite_service import SQLiteService
from .templates import render_prompt
from . import config

import logging
logger = logging.getLogger(__name__)


def latest_completed_run(runs: List[EvaluationRun]) -> Optional[EvaluationRun]:
    # runs are newest first
    return next((r for r in runs if r.status == EvaluationStatus.completed), None)


@dataclass
class _RunSnapshot:
    """Everything a run needs, read once before the run is created."""
    evaluation: Evaluation
    test_cases: List[TestCase]
    criteria: List[EvaluationCriterion]
    template: Optional[str] = None
    model_parameters: ModelParameters = field(default_factory=ModelParameters)

    @property
    def enabled_criteria(self) -> List[EvaluationCriterion]:
        return [c for c in self.criteria if c.enabled]


class EvaluatorService:
    def __init__(
        self,
        db_service: SQLiteService,
        model_client: ModelClient = None,
        session_cache: EvaluationSessionCache = None,
        drafts: DraftRegistry = None,
        cancellation: CancellationRegistry = None,
        scorer: JudgeScorer = None,
    ):
        logger.info("Initializing EvaluatorService")

        self.db = db_service
        self.model_client = model_client or get_model_client()
        self.session_cache = session_cache or EvaluationSessionCache()
        self.drafts = drafts or DraftRegistry()
        self.cancellation = cancellation or CancellationRegistry()
        self.scorer = scorer or JudgeScorer(self.model_client)

        # Serializes terminal writes (finalize vs. stop) per run
        self._run_locks: Dict[str, asyncio.Lock] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}  # run_id -> background batch task

    def _get_run_lock(self, run_id: str) -> asyncio.Lock:
        return self._run_locks.setdefault(run_id, asyncio.Lock())

    # ==== PRECONDITIONS (Feature: batch-run) ====

    async def _load_snapshot(self, evaluation_id: str, require_test_cases: bool) -> _RunSnapshot:
        evaluation = await self.db.get_evaluation(evaluation_id)
        if not evaluation:
            raise NotFoundError(f"Evaluation {evaluation_id} not found")

        if self.drafts.is_dirty(evaluation_id):
            raise EvaluationValidationError(
                "Evaluation has unsaved changes. Submit a new version before running it."
            )
        if not evaluation.model_id:
            raise EvaluationValidationError("Evaluation has no target model assigned")

        test_cases = await self.db.list_testcases(evaluation_id)
        if require_test_cases and not test_cases:
            raise EvaluationValidationError("Evaluation has no test cases")

        criteria = await self.db.list_criteria(evaluation_id)

        template = None
        model_parameters = evaluation.config.model_parameters
        if evaluation.prompt_id:
            prompt = await self.db.get_prompt(evaluation.prompt_id)
            if prompt is None:
                logger.warning(f"Prompt {evaluation.prompt_id} linked to evaluation {evaluation_id} not found; sending raw input")
            else:
                template = prompt.content
                if evaluation.config.inherited_from_prompt and prompt.model_parameters is not None:
                    model_parameters = prompt.model_parameters

        return _RunSnapshot(
            evaluation=evaluation,
            test_cases=test_cases,
            criteria=criteria,
            template=template,
            model_parameters=model_parameters,
        )

    # ==== RUN LIFECYCLE (Feature: run-lifecycle) ====

    async def _open_run(self, snapshot: _RunSnapshot) -> tuple:
        """Create the run, register its token and promote run + evaluation to running."""
        evaluation = snapshot.evaluation
        run = await self.db.create_run(evaluation.id, snapshot.model_parameters)
        token = self.cancellation.create(run.id)

        try:
            run.transition_to(EvaluationStatus.running)
            await self.db.update_run(run)
            await self._mirror_to_evaluation(evaluation.id, EvaluationStatus.running)
        except Exception:
            self.cancellation.release(run.id)
            raise

        def _add_run(detail):
            detail.evaluation.status = EvaluationStatus.running
            detail.runs.insert(0, run.model_copy(deep=True))

        self.session_cache.update(evaluation.id, _add_run)
        logger.debug(f"Run {run.id}: pending -> running")
        return run, token

    async def _save_run(self, run: EvaluationRun) -> None:
        try:
            await self.db.update_run(run)
        except Exception as e:
            logger.error(f"Failed to persist run {run.id} ({run.status.value}): {e}")

    async def _mirror_to_evaluation(
        self,
        evaluation_id: str,
        status: EvaluationStatus,
        results: Optional[RunSummary] = None,
    ) -> None:
        evaluation = await self.db.get_evaluation(evaluation_id)
        if evaluation is None:
            logger.warning(f"Evaluation {evaluation_id} disappeared while its run was active")
            return
        evaluation.status = status
        if results is not None:
            evaluation.results = results
        try:
            await self.db.update_evaluation(evaluation)
        except Exception as e:
            logger.error(f"Failed to persist status '{status.value}' for evaluation {evaluation_id}: {e}")

    async def _release_cached_detail(self, evaluation_id: str) -> None:
        """Drop the cached detail after a terminal write.

        A detail holding an unsaved draft is kept; only its run fields
        (evaluation status and results, run list, selected results) are reloaded.
        """
        if self.session_cache.peek(evaluation_id) is None or not self.drafts.is_dirty(evaluation_id):
            self.session_cache.invalidate(evaluation_id)
            return

        try:
            evaluation = await self.db.get_evaluation(evaluation_id)
            runs = await self.db.list_runs(evaluation_id=evaluation_id)
            selected = latest_completed_run(runs)
            results = await self.db.list_results(selected.id) if selected else []
        except Exception as e:
            logger.error(f"Failed to refresh runs of drafted evaluation {evaluation_id}: {e}")
            return

        def _refresh_runs(detail):
            if evaluation is not None:
                detail.evaluation.status = evaluation.status
                detail.evaluation.results = evaluation.results
            detail.runs = runs
            detail.selected_run_id = selected.id if selected else None
            detail.results = results

        # The draft may have been submitted or deleted while the store was read
        if self.drafts.is_dirty(evaluation_id):
            self.session_cache.update(evaluation_id, _refresh_runs)
        else:
            self.session_cache.invalidate(evaluation_id)

    # ==== BATCH RUN (Feature: batch-run) ====

    async def start_batch_run(self, evaluation_id: str) -> EvaluationRun:
        """Validate, create a running run and execute its test cases in the background.

        Raises:
            NotFoundError: evaluation does not exist
            EvaluationValidationError: dirty draft, no target model or no test cases
        """
        snapshot = await self._load_snapshot(evaluation_id, require_test_cases=True)
        run, token = await self._open_run(snapshot)

        task = asyncio.create_task(self._run_batch(run, snapshot, token), name=f"run-{run.id}")
        self._running_tasks[run.id] = task
        task.add_done_callback(lambda t, run_id=run.id: self._on_task_done(run_id, t))

        logger.info(f"Started run {run.id} for evaluation {evaluation_id} ({len(snapshot.test_cases)} test case(s))")
        return run

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._running_tasks.pop(run_id, None)
        if task.cancelled():
            logger.warning(f"Run task {run_id} was cancelled before finishing")
        elif task.exception() is not None:
            logger.error(f"Run task {run_id} ended with an unhandled error: {task.exception()}")

    async def _run_batch(self, run: EvaluationRun, snapshot: _RunSnapshot, token: CancellationToken) -> None:
        results: List[TestCaseResult] = []
        total = len(snapshot.test_cases)
        try:
            for index, test_case in enumerate(snapshot.test_cases, start=1):
                if token.aborted:
                    logger.info(f"Run {run.id} aborted; skipping remaining {total - index + 1} test case(s)")
                    break
                result = await self._execute_case(run, snapshot, test_case)
                results.append(await self._record_result(run.id, result))
                logger.info(
                    f"Run {run.id}: test case {index}/{total} "
                    f"{'passed' if result.passed else 'failed'}"
                )
            await self._finalize_run(run.id, snapshot.evaluation.id, results, token)
        except Exception as e:
            logger.error(f"Run {run.id} crashed: {e}", exc_info=True)
            await self._fail_run(run.id, snapshot.evaluation.id, str(e) or type(e).__name__, results)
        finally:
            self.cancellation.release(run.id)
            self._run_locks.pop(run.id, None)

    async def wait_for_run(self, run_id: str) -> Optional[EvaluationRun]:
        """Await a background run (if still active) and return its stored state."""
        task = self._running_tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task})
        return await self.db.get_run(run_id)

    # ==== SINGLE-CASE RUN (Feature: single-case-run) ====

    async def start_single_case_run(self, evaluation_id: str, test_case_id: str) -> EvaluationRun:
        """Run one test case and return the run once it is terminal.

        Raises:
            NotFoundError: evaluation or test case does not exist
            EvaluationValidationError: dirty draft or no target model
        """
        snapshot = await self._load_snapshot(evaluation_id, require_test_cases=False)
        test_case = next((tc for tc in snapshot.test_cases if tc.id == test_case_id), None)
        if test_case is None:
            raise NotFoundError(f"Test case {test_case_id} not found in evaluation {evaluation_id}")

        run, token = await self._open_run(snapshot)
        logger.info(f"Started single-case run {run.id} for test case {test_case_id}")

        final_run = None
        try:
            results: List[TestCaseResult] = []
            if not token.aborted:
                result = await self._execute_case(run, snapshot, test_case)
                results.append(await self._record_result(run.id, result))
            final_run = await self._finalize_run(
                run.id,
                evaluation_id,
                results,
                token,
                summary=summarize_single_case(results[0], aborted=token.aborted) if results else None,
                error_message=results[0].error_message if results else None,
            )
        except Exception as e:
            logger.error(f"Single-case run {run.id} crashed: {e}", exc_info=True)
            final_run = await self._fail_run(run.id, evaluation_id, str(e) or type(e).__name__, [])
        finally:
            self.cancellation.release(run.id)
            self._run_locks.pop(run.id, None)

        return final_run or await self.db.get_run(run.id) or run

    # ==== PER-CASE EXECUTION ====

    async def _execute_case(self, run: EvaluationRun, snapshot: _RunSnapshot, test_case: TestCase) -> TestCaseResult:
        """Render, call the target model, judge and aggregate one test case.

        Any failure becomes a failed result carrying the error message.
        """
        evaluation = snapshot.evaluation
        eval_config = evaluation.config
        try:
            prompt_text = render_prompt(snapshot.template, test_case.input_variables, test_case.input_text)
            message = self.model_client.build_user_message(
                prompt_text,
                test_case.attachments,
                evaluation.model_id,
                eval_config.file_processing,
            )
            completion = await self.model_client.complete(
                evaluation.model_id,
                [message],
                snapshot.model_parameters,
                file_processing=eval_config.file_processing,
                ocr_provider=eval_config.ocr_provider,
            )

            case_scores = CaseScores()
            enabled = snapshot.enabled_criteria
            if evaluation.judge_model_id and enabled:
                case_scores = await self.scorer.score_all(
                    enabled, test_case, completion.content, evaluation.judge_model_id
                )

            average = weighted_average(case_scores.scores, enabled)
            return TestCaseResult(
                evaluation_id=evaluation.id,
                run_id=run.id,
                test_case_id=test_case.id,
                model_output=completion.content,
                scores=case_scores.scores,
                ai_feedback=case_scores.feedback,
                latency_ms=completion.latency_ms,
                tokens_input=completion.usage.prompt_tokens,
                tokens_output=completion.usage.completion_tokens,
                passed=is_passed(average, eval_config.pass_threshold),
            )
        except Exception as e:
            logger.warning(f"Test case {test_case.id} failed in run {run.id}: {str(e)[:200]}")
            return TestCaseResult(
                evaluation_id=evaluation.id,
                run_id=run.id,
                test_case_id=test_case.id,
                model_output="",
                passed=False,
                error_message=str(e) or type(e).__name__,
            )

    async def _record_result(self, run_id: str, result: TestCaseResult) -> TestCaseResult:
        """Persist a result; on failure keep the in-memory copy."""
        try:
            return await self.db.append_result(run_id, result)
        except Exception as e:
            logger.error(f"Failed to persist result for test case {result.test_case_id} in run {run_id}: {e}")
            return result

    # ==== FINALIZATION (Feature: run-lifecycle) ====

    async def _finalize_run(
        self,
        run_id: str,
        evaluation_id: str,
        results: List[TestCaseResult],
        token: CancellationToken,
        summary: Optional[RunSummary] = None,
        error_message: Optional[str] = None,
    ) -> Optional[EvaluationRun]:
        """Write the run's terminal state, mirror it to the evaluation, then release the cached detail."""
        summary = summary or summarize_run(results)

        async with self._get_run_lock(run_id):
            run = await self.db.get_run(run_id)
            if run is None:
                logger.warning(f"Run {run_id} was deleted before it finished")
                await self._release_cached_detail(evaluation_id)
                return None

            run.results = summary
            run.total_tokens_input = sum(r.tokens_input for r in results)
            run.total_tokens_output = sum(r.tokens_output for r in results)

            if not run.is_terminal:
                if token.aborted:
                    run.transition_to(EvaluationStatus.failed, config.ABORTED_MESSAGE)
                elif error_message:
                    run.transition_to(EvaluationStatus.failed, error_message)
                else:
                    run.transition_to(EvaluationStatus.completed)

            await self._save_run(run)
            await self._mirror_to_evaluation(evaluation_id, run.status, summary)

        await self._release_cached_detail(evaluation_id)
        logger.info(f"Run {run_id} {run.status.value}: {summary.summary}")
        return run

    async def _fail_run(
        self,
        run_id: str,
        evaluation_id: str,
        error_message: str,
        results: List[TestCaseResult],
    ) -> Optional[EvaluationRun]:
        """Last-resort path that moves a crashed run to failed."""
        try:
            async with self._get_run_lock(run_id):
                run = await self.db.get_run(run_id)
                if run is None:
                    return None
                if not run.is_terminal:
                    run.transition_to(EvaluationStatus.failed, error_message)
                run.results = summarize_run(results)
                await self._save_run(run)
                await self._mirror_to_evaluation(evaluation_id, EvaluationStatus.failed, run.results)
            return run
        except Exception as e:
            logger.error(f"Could not mark run {run_id} as failed: {e}", exc_info=True)
            return None
        finally:
            await self._release_cached_detail(evaluation_id)

    # ==== CANCELLATION (Feature: cancel-run) ====

    async def stop_run(self, run_id: str) -> Optional[EvaluationRun]:
        """Abort a run.

        The token is flagged before anything else so the loop cannot start
        another test case. The run is then marked failed with ABORTED_MESSAGE.

        Returns:
            The updated run, or None if not found

        Raises:
            EvaluationValidationError: if the run was already finished
        """
        flagged = self.cancellation.abort(run_id)

        try:
            async with self._get_run_lock(run_id):
                run = await self.db.get_run(run_id)
                if run is None:
                    return None
                if run.is_terminal:
                    if flagged:
                        # Finished while the stop was in flight
                        return run
                    raise EvaluationValidationError(f"Cannot stop run in '{run.status.value}' state")

                run.transition_to(EvaluationStatus.failed, config.ABORTED_MESSAGE)
                await self._save_run(run)
                await self._mirror_to_evaluation(run.evaluation_id, EvaluationStatus.failed)
        finally:
            if run_id not in self._running_tasks:
                self._run_locks.pop(run_id, None)

        await self._release_cached_detail(run.evaluation_id)
        self.cancellation.release(run_id)
        logger.info(f"Run {run_id} stopped by user")
        return run

    # ==== ORPHAN CLEANUP (Feature: orphan-cleanup) ====

    async def cleanup_orphaned_runs(self) -> int:
        """Fail runs left pending/running by a previous process.

        Called at startup. Runs owned by this process are left alone.
        """
        try:
            stale = await self.db.list_runs(statuses=[EvaluationStatus.pending, EvaluationStatus.running])
        except Exception as e:
            logger.error(f"[STARTUP] Orphaned run cleanup failed: {e}")
            return 0

        orphaned_count = 0
        for run in stale:
            if run.id in self._running_tasks or run.id in self.cancellation:
                continue
            run.transition_to(EvaluationStatus.failed, config.ORPHANED_RUN_MESSAGE)
            await self._save_run(run)
            await self._mirror_to_evaluation(run.evaluation_id, EvaluationStatus.failed)
            await self._release_cached_detail(run.evaluation_id)
            orphaned_count += 1
            logger.info(f"[STARTUP] Marked orphaned run {run.id} (evaluation {run.evaluation_id}) as failed")

        if orphaned_count:
            logger.info(f"[STARTUP] Cleaned up {orphaned_count} orphaned run(s)")
        else:
            logger.info("[STARTUP] No orphaned runs found")
        return orphaned_count

    async def shutdown(self) -> None:
        """Cancel background run tasks. Their runs are failed by the next startup cleanup."""
        tasks = [t for t in self._running_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} active run task(s)")

    # ==== READ ACCESSORS ====

    def is_active(self, run_id: str) -> bool:
        return run_id in self.cancellation or run_id in self._running_tasks

    async def get_run(self, run_id: str) -> Optional[EvaluationRun]:
        return await self.db.get_run(run_id)

    async def list_runs(self, evaluation_id: str) -> List[EvaluationRun]:
        return await self.db.list_runs(evaluation_id=evaluation_id)

    async def get_run_results(self, run_id: str) -> Optional[List[TestCaseResult]]:
        run = await self.db.get_run(run_id)
        if run is None:
            return None
        return await self.db.list_results(run_id)


# Service instance
_evaluator_service: Optional[EvaluatorService] = None


def get_evaluator_service(db_service: SQLiteService, model_client: ModelClient = None) -> EvaluatorService:
    """Get or create the evaluator service instance."""
    global _evaluator_service
    if _evaluator_service is None:
        _evaluator_service = EvaluatorService(db_service, model_client)
    return _evaluator_service
