"""
Workspace Service: evaluation detail, draft edits and new versions.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. DETAIL VIEW (Feature: session-cache)
   - get_detail() loads evaluation, test cases, criteria and runs once and
     serves later reads from the session cache
   - The newest completed run is selected and its results loaded

2. DRAFT EDITS (Feature: draft-versions)
   - Test case / criterion / evaluation edits change the cached draft only
     and mark the evaluation dirty; a dirty evaluation cannot start runs
   - Deleting a test case renumbers order_index

3. SUBMIT NEW VERSION (Feature: draft-versions)
   - Copies the draft into a new evaluation "<name> (copy)"
   - Clears the source's dirty flag and cached detail

4. RUN SELECTION AND DELETION (Feature: run-history)
   - select_run() swaps the results shown in the detail
   - Deleting the selected run selects the next completed one

==============================================================================
"""

from typing import Callable, Optional, TypeVar

from .errors import EvaluationValidationError, NotFoundError
from .evaluator_service import EvaluatorService, latest_completed_run
from .models import (
    CriterionCreate, CriterionUpdate, Evaluation, EvaluationConfig,
    EvaluationCreate, EvaluationCriterion, EvaluationDetail, EvaluationUpdate,
    TestCase, TestCaseCreate, TestCaseUpdate,
)
from .sqlite_service import SQLiteService

import logging
logger = logging.getLogger(__name__)

T = TypeVar('T')


class WorkspaceService:
    def __init__(self, db_service: SQLiteService, evaluator: EvaluatorService):
        self.db = db_service
        self.evaluator = evaluator
        self.session_cache = evaluator.session_cache
        self.drafts = evaluator.drafts

    # ==== EVALUATIONS ====

    async def create_evaluation(self, request: EvaluationCreate) -> Evaluation:
        evaluation = Evaluation(
            name=request.name,
            model_id=request.model_id,
            judge_model_id=request.judge_model_id,
            prompt_id=request.prompt_id,
            config=request.config or EvaluationConfig(),
        )
        test_cases = [
            TestCase(evaluation_id=evaluation.id, order_index=index, **tc.model_dump())
            for index, tc in enumerate(request.test_cases)
        ]
        criteria = [
            EvaluationCriterion(evaluation_id=evaluation.id, **c.model_dump())
            for c in request.criteria
        ]
        await self.db.create_evaluation(evaluation, test_cases, criteria)
        logger.info(
            f"Created evaluation {evaluation.id} '{evaluation.name}' "
            f"({len(test_cases)} test case(s), {len(criteria)} criterion/criteria)"
        )
        return evaluation

    async def delete_evaluation(self, evaluation_id: str) -> bool:
        deleted = await self.db.delete_evaluation(evaluation_id)
        self.session_cache.invalidate(evaluation_id)
        self.drafts.clear(evaluation_id)
        return deleted

    # ==== DETAIL VIEW (Feature: session-cache) ====

    async def _load_detail(self, evaluation_id: str) -> EvaluationDetail:
        evaluation = await self.db.get_evaluation(evaluation_id)
        if evaluation is None:
            raise NotFoundError(f"Evaluation {evaluation_id} not found")

        if self.drafts.is_dirty(evaluation_id):
            # Only an explicit invalidation drops a draft; run completion keeps it
            logger.warning(f"Discarding unsaved draft of evaluation {evaluation_id} after cache invalidation")
            self.drafts.clear(evaluation_id)

        runs = await self.db.list_runs(evaluation_id=evaluation_id)
        selected = latest_completed_run(runs)
        return EvaluationDetail(
            evaluation=evaluation,
            test_cases=await self.db.list_testcases(evaluation_id),
            criteria=await self.db.list_criteria(evaluation_id),
            runs=runs,
            results=await self.db.list_results(selected.id) if selected else [],
            selected_run_id=selected.id if selected else None,
        )

    async def get_detail(self, evaluation_id: str, refresh: bool = False) -> EvaluationDetail:
        """Cached detail of an evaluation, loading it on first access.

        Raises:
            NotFoundError: evaluation does not exist
        """
        if refresh and not self.drafts.is_dirty(evaluation_id):
            self.session_cache.invalidate(evaluation_id)
        detail = await self.session_cache.get(evaluation_id, lambda: self._load_detail(evaluation_id))
        detail.dirty = self.drafts.is_dirty(evaluation_id)
        return detail

    async def _edit(self, evaluation_id: str, mutate: Callable[[EvaluationDetail], T]) -> T:
        """Apply a draft edit to the cached detail and mark the evaluation dirty."""
        detail = await self.get_detail(evaluation_id)
        value = mutate(detail)
        if evaluation_id not in self.session_cache:
            self.session_cache.set(evaluation_id, detail)
        self.drafts.mark_dirty(evaluation_id)
        detail.dirty = True
        return value

    async def update_evaluation(self, evaluation_id: str, update: EvaluationUpdate) -> EvaluationDetail:
        changes = update.model_dump(exclude_unset=True)

        def _apply(detail: EvaluationDetail) -> EvaluationDetail:
            for key, value in changes.items():
                if key == "name" and not value:
                    continue
                if key == "config":
                    value = update.config or EvaluationConfig()
                setattr(detail.evaluation, key, value)
            return detail

        return await self._edit(evaluation_id, _apply)

    # ==== TEST CASE DRAFTS ====

    async def add_test_case(self, evaluation_id: str, request: TestCaseCreate) -> TestCase:
        def _apply(detail: EvaluationDetail) -> TestCase:
            test_case = TestCase(
                evaluation_id=evaluation_id,
                order_index=len(detail.test_cases),
                **request.model_dump(),
            )
            detail.test_cases.append(test_case)
            return test_case

        return await self._edit(evaluation_id, _apply)

    async def update_test_case(self, evaluation_id: str, test_case_id: str, update: TestCaseUpdate) -> TestCase:
        detail = await self.get_detail(evaluation_id)
        index = next((i for i, tc in enumerate(detail.test_cases) if tc.id == test_case_id), None)
        if index is None:
            raise NotFoundError(f"Test case {test_case_id} not found in evaluation {evaluation_id}")

        def _apply(d: EvaluationDetail) -> TestCase:
            data = d.test_cases[index].model_dump()
            data.update(update.model_dump(exclude_unset=True))
            d.test_cases[index] = TestCase.model_validate(data)
            return d.test_cases[index]

        return await self._edit(evaluation_id, _apply)

    async def delete_test_case(self, evaluation_id: str, test_case_id: str) -> bool:
        detail = await self.get_detail(evaluation_id)
        if not any(tc.id == test_case_id for tc in detail.test_cases):
            return False

        def _apply(d: EvaluationDetail) -> bool:
            remaining = [tc for tc in d.test_cases if tc.id != test_case_id]
            for index, tc in enumerate(remaining):
                tc.order_index = index
            d.test_cases = remaining
            return True

        return await self._edit(evaluation_id, _apply)

    # ==== CRITERION DRAFTS ====

    async def add_criterion(self, evaluation_id: str, request: CriterionCreate) -> EvaluationCriterion:
        def _apply(detail: EvaluationDetail) -> EvaluationCriterion:
            criterion = EvaluationCriterion(evaluation_id=evaluation_id, **request.model_dump())
            detail.criteria.append(criterion)
            return criterion

        return await self._edit(evaluation_id, _apply)

    async def update_criterion(self, evaluation_id: str, criterion_id: str, update: CriterionUpdate) -> EvaluationCriterion:
        detail = await self.get_detail(evaluation_id)
        index = next((i for i, c in enumerate(detail.criteria) if c.id == criterion_id), None)
        if index is None:
            raise NotFoundError(f"Criterion {criterion_id} not found in evaluation {evaluation_id}")

        def _apply(d: EvaluationDetail) -> EvaluationCriterion:
            data = d.criteria[index].model_dump()
            data.update(update.model_dump(exclude_unset=True))
            d.criteria[index] = EvaluationCriterion.model_validate(data)
            return d.criteria[index]

        return await self._edit(evaluation_id, _apply)

    async def delete_criterion(self, evaluation_id: str, criterion_id: str) -> bool:
        detail = await self.get_detail(evaluation_id)
        if not any(c.id == criterion_id for c in detail.criteria):
            return False

        def _apply(d: EvaluationDetail) -> bool:
            d.criteria = [c for c in d.criteria if c.id != criterion_id]
            return True

        return await self._edit(evaluation_id, _apply)

    # ==== NEW VERSION (Feature: draft-versions) ====

    async def submit_new_version(self, evaluation_id: str, name: Optional[str] = None) -> Evaluation:
        """Copy the current draft into a new evaluation and reset the source's draft state."""
        detail = await self.get_detail(evaluation_id)
        source = detail.evaluation

        request = EvaluationCreate(
            name=name or f"{source.name} (copy)",
            model_id=source.model_id,
            judge_model_id=source.judge_model_id,
            prompt_id=source.prompt_id,
            config=source.config.model_copy(deep=True),
            test_cases=[
                TestCaseCreate(**tc.model_dump(include=set(TestCaseCreate.model_fields)))
                for tc in sorted(detail.test_cases, key=lambda tc: tc.order_index)
            ],
            criteria=[
                CriterionCreate(**c.model_dump(include=set(CriterionCreate.model_fields)))
                for c in detail.criteria
            ],
        )
        new_evaluation = await self.create_evaluation(request)

        self.drafts.clear(evaluation_id)
        self.session_cache.invalidate(evaluation_id)
        logger.info(f"Submitted evaluation {evaluation_id} as new version {new_evaluation.id}")
        return new_evaluation

    # ==== RUN HISTORY (Feature: run-history) ====

    async def select_run(self, evaluation_id: str, run_id: str) -> EvaluationDetail:
        run = await self.db.get_run(run_id)
        if run is None or run.evaluation_id != evaluation_id:
            raise NotFoundError(f"Run {run_id} not found in evaluation {evaluation_id}")
        results = await self.db.list_results(run_id)

        detail = await self.get_detail(evaluation_id)
        detail.selected_run_id = run_id
        detail.results = results
        return detail

    async def delete_run(self, run_id: str) -> bool:
        """Delete a finished run; an active run must be stopped first."""
        run = await self.db.get_run(run_id)
        if run is None:
            return False
        if self.evaluator.is_active(run_id) or not run.is_terminal:
            raise EvaluationValidationError("Run is still in progress. Stop it before deleting.")

        deleted = await self.db.delete_run(run_id)

        detail = self.session_cache.peek(run.evaluation_id)
        if detail is not None:
            detail.runs = [r for r in detail.runs if r.id != run_id]
            if detail.selected_run_id == run_id:
                replacement = latest_completed_run(detail.runs)
                detail.selected_run_id = replacement.id if replacement else None
                detail.results = await self.db.list_results(replacement.id) if replacement else []
        return deleted


# Service instance
_workspace_service: Optional[WorkspaceService] = None


def get_workspace_service(db_service: SQLiteService, evaluator: EvaluatorService) -> WorkspaceService:
    """Get or create the workspace service instance."""
    global _workspace_service
    if _workspace_service is None:
        _workspace_service = WorkspaceService(db_service, evaluator)
    return _workspace_service
