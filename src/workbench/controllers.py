from typing import List
from fastapi import APIRouter, HTTPException, status
import logging

logger = logging.getLogger(__name__)

from .errors import NotFoundError
from .models import (
    CriterionCreate,
    CriterionUpdate,
    Evaluation,
    EvaluationCreate,
    EvaluationCriterion,
    EvaluationDetail,
    EvaluationRun,
    EvaluationUpdate,
    NewVersionRequest,
    Prompt,
    PromptCreate,
    TestCase,
    TestCaseCreate,
    TestCaseResult,
    TestCaseUpdate,
)
from .sqlite_service import get_db_service
from .evaluator_service import get_evaluator_service
from .workspace_service import get_workspace_service

router = APIRouter(prefix="/api")
db = get_db_service()
evaluator = get_evaluator_service(db)
workspace = get_workspace_service(db, evaluator)


# ============================================================================
# Prompts
# ============================================================================

@router.post("/prompts", response_model=Prompt, status_code=201)
async def create_prompt(request: PromptCreate):
    try:
        return await db.create_prompt(Prompt(**request.model_dump()))
    except Exception as e:
        raise HTTPException(500, f"Failed to create prompt: {str(e)}")


@router.get("/prompts", response_model=List[Prompt])
async def list_prompts(skip: int = 0, limit: int = 100):
    return await db.list_prompts(skip=skip, limit=limit)


@router.get("/prompts/{prompt_id}", response_model=Prompt)
async def get_prompt(prompt_id: str):
    prompt = await db.get_prompt(prompt_id)
    if not prompt:
        raise HTTPException(404, f"Prompt '{prompt_id}' not found")
    return prompt


# ============================================================================
# Evaluations
# ============================================================================

@router.post("/evaluations", response_model=Evaluation, status_code=201)
async def create_evaluation(request: EvaluationCreate):
    try:
        return await workspace.create_evaluation(request)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to create evaluation: {str(e)}")


@router.get("/evaluations", response_model=List[Evaluation])
async def list_evaluations(skip: int = 0, limit: int = 100):
    return await db.list_evaluations(skip=skip, limit=limit)


@router.get("/evaluations/{evaluation_id}", response_model=EvaluationDetail)
async def get_evaluation_detail(evaluation_id: str, refresh: bool = False):
    """Evaluation detail (draft, run history, selected run results) from the session cache."""
    try:
        return await workspace.get_detail(evaluation_id, refresh=refresh)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to load evaluation: {str(e)}")


@router.patch("/evaluations/{evaluation_id}", response_model=EvaluationDetail)
async def update_evaluation(evaluation_id: str, update: EvaluationUpdate):
    """Draft edit. Marks the evaluation dirty until a new version is submitted."""
    try:
        return await workspace.update_evaluation(evaluation_id, update)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to update evaluation: {str(e)}")


@router.delete("/evaluations/{evaluation_id}", status_code=204)
async def delete_evaluation(evaluation_id: str):
    try:
        success = await workspace.delete_evaluation(evaluation_id)
        if not success:
            raise HTTPException(404, f"Evaluation '{evaluation_id}' not found")
    except HTTPException:
        raise  # Re-raise HTTP exceptions as-is
    except Exception as e:
        raise HTTPException(500, f"Failed to delete evaluation: {str(e)}")


@router.post("/evaluations/{evaluation_id}/versions", response_model=Evaluation, status_code=201)
async def submit_new_version(evaluation_id: str, request: NewVersionRequest = None):
    """Copy the current draft into a new evaluation and clear the source's draft state."""
    try:
        return await workspace.submit_new_version(evaluation_id, name=request.name if request else None)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to submit new version: {str(e)}")


# ============================================================================
# Test case drafts
# ============================================================================

@router.post("/evaluations/{evaluation_id}/testcases", response_model=TestCase, status_code=201)
async def add_test_case(evaluation_id: str, request: TestCaseCreate):
    try:
        return await workspace.add_test_case(evaluation_id, request)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to add test case: {str(e)}")


@router.put("/evaluations/{evaluation_id}/testcases/{tc_id}", response_model=TestCase)
async def update_test_case(evaluation_id: str, tc_id: str, update: TestCaseUpdate):
    try:
        return await workspace.update_test_case(evaluation_id, tc_id, update)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to update test case: {str(e)}")


@router.delete("/evaluations/{evaluation_id}/testcases/{tc_id}", status_code=204)
async def delete_test_case(evaluation_id: str, tc_id: str):
    try:
        if not await workspace.delete_test_case(evaluation_id, tc_id):
            raise HTTPException(404, f"Test case '{tc_id}' not found")
    except HTTPException:
        raise
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to delete test case: {str(e)}")


# ============================================================================
# Criterion drafts
# ============================================================================

@router.post("/evaluations/{evaluation_id}/criteria", response_model=EvaluationCriterion, status_code=201)
async def add_criterion(evaluation_id: str, request: CriterionCreate):
    try:
        return await workspace.add_criterion(evaluation_id, request)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to add criterion: {str(e)}")


@router.put("/evaluations/{evaluation_id}/criteria/{criterion_id}", response_model=EvaluationCriterion)
async def update_criterion(evaluation_id: str, criterion_id: str, update: CriterionUpdate):
    try:
        return await workspace.update_criterion(evaluation_id, criterion_id, update)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to update criterion: {str(e)}")


@router.delete("/evaluations/{evaluation_id}/criteria/{criterion_id}", status_code=204)
async def delete_criterion(evaluation_id: str, criterion_id: str):
    try:
        if not await workspace.delete_criterion(evaluation_id, criterion_id):
            raise HTTPException(404, f"Criterion '{criterion_id}' not found")
    except HTTPException:
        raise
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to delete criterion: {str(e)}")


# ============================================================================
# Runs
# ============================================================================

@router.post("/evaluations/{evaluation_id}/runs", response_model=EvaluationRun, status_code=status.HTTP_202_ACCEPTED)
async def start_batch_run(evaluation_id: str):
    """Start a batch run. Returns immediately; poll GET /api/runs/{run_id} for progress.

    Raises:
        404: Evaluation not found
        400: No target model, no test cases, or unsaved draft changes
    """
    try:
        return await evaluator.start_batch_run(evaluation_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to start run: {str(e)}")


@router.post("/evaluations/{evaluation_id}/testcases/{tc_id}/run", response_model=EvaluationRun)
async def start_single_case_run(evaluation_id: str, tc_id: str):
    """Run one test case and return the finished run."""
    try:
        return await evaluator.start_single_case_run(evaluation_id, tc_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to run test case: {str(e)}")


@router.get("/evaluations/{evaluation_id}/runs", response_model=List[EvaluationRun])
async def list_runs(evaluation_id: str):
    return await evaluator.list_runs(evaluation_id)


@router.post("/evaluations/{evaluation_id}/runs/{run_id}/select", response_model=EvaluationDetail)
async def select_run(evaluation_id: str, run_id: str):
    try:
        return await workspace.select_run(evaluation_id, run_id)
    except NotFoundError as e:
        raise HTTPException(404, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to select run: {str(e)}")


@router.get("/runs/{run_id}", response_model=EvaluationRun)
async def get_run(run_id: str):
    run = await evaluator.get_run(run_id)
    if not run:
        raise HTTPException(404, f"Run '{run_id}' not found")
    return run


@router.get("/runs/{run_id}/results", response_model=List[TestCaseResult])
async def get_run_results(run_id: str):
    results = await evaluator.get_run_results(run_id)
    if results is None:
        raise HTTPException(404, f"Run '{run_id}' not found")
    return results


@router.post("/runs/{run_id}/stop", response_model=EvaluationRun)
async def stop_run(run_id: str):
    """Stop a running run.

    The run is marked failed with an "aborted" message right away; a model
    call already in flight finishes but no further test case starts.

    Raises:
        404: Run not found
        400: Run already finished
    """
    try:
        run = await evaluator.stop_run(run_id)
        if not run:
            raise HTTPException(404, f"Run '{run_id}' not found")
        return run
    except HTTPException:
        raise  # Re-raise HTTP exceptions as-is
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to stop run: {str(e)}")


@router.delete("/runs/{run_id}", status_code=204)
async def delete_run(run_id: str):
    try:
        if not await workspace.delete_run(run_id):
            raise HTTPException(404, f"Run '{run_id}' not found")
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        raise HTTPException(500, f"Failed to delete run: {str(e)}")
