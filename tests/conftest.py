"""
Pytest Configuration and Fixtures

Provides shared fixtures for both unit and integration tests.
"""

import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from tests.mocks.mock_model_client import JUDGE_MODEL, TARGET_MODEL, ScriptedModelClient


# ==============================================================================
# Mock Database Service
# ==============================================================================

def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


@pytest.fixture
def mock_db_service():
    """Create a mock database service for testing without real database.

    Objects are copied on the way in and out, like the SQLite store that
    round-trips JSON, so callers never share instances with the store.
    """
    from src.workbench.models import EvaluationRun, EvaluationStatus

    mock = AsyncMock()

    # In-memory storage for test data
    mock._evaluations = {}
    mock._testcases = {}
    mock._criteria = {}
    mock._runs = {}
    mock._results = []
    mock._prompts = {}

    # Failure injection: set to an exception to make the write fail
    mock.fail_append_result = None
    mock.fail_update_run = None

    # Evaluation operations
    async def create_evaluation(evaluation, test_cases=(), criteria=()):
        mock._evaluations[evaluation.id] = _copy(evaluation)
        for tc in test_cases:
            mock._testcases[tc.id] = _copy(tc)
        for c in criteria:
            mock._criteria[c.id] = _copy(c)
        return evaluation

    async def get_evaluation(evaluation_id):
        return _copy(mock._evaluations.get(evaluation_id))

    async def list_evaluations(skip=0, limit=100):
        evaluations = [_copy(e) for e in reversed(list(mock._evaluations.values()))]
        return evaluations[skip:skip + limit]

    async def update_evaluation(evaluation):
        mock._evaluations[evaluation.id] = _copy(evaluation)
        return evaluation

    async def delete_evaluation(evaluation_id):
        if evaluation_id not in mock._evaluations:
            return False
        del mock._evaluations[evaluation_id]
        for store in (mock._testcases, mock._criteria, mock._runs):
            for key in [k for k, v in store.items() if v.evaluation_id == evaluation_id]:
                del store[key]
        mock._results[:] = [r for r in mock._results if r.evaluation_id != evaluation_id]
        return True

    # Test case operations
    async def create_testcase(test_case):
        mock._testcases[test_case.id] = _copy(test_case)
        return test_case

    async def get_testcase(testcase_id):
        return _copy(mock._testcases.get(testcase_id))

    async def list_testcases(evaluation_id):
        cases = [tc for tc in mock._testcases.values() if tc.evaluation_id == evaluation_id]
        return [_copy(tc) for tc in sorted(cases, key=lambda tc: tc.order_index)]

    # Criterion operations
    async def create_criterion(criterion):
        mock._criteria[criterion.id] = _copy(criterion)
        return criterion

    async def list_criteria(evaluation_id):
        return [_copy(c) for c in mock._criteria.values() if c.evaluation_id == evaluation_id]

    # Run operations
    async def create_run(evaluation_id, model_parameters=None):
        run = EvaluationRun(evaluation_id=evaluation_id, model_parameters=model_parameters)
        mock._runs[run.id] = _copy(run)
        return run

    async def get_run(run_id):
        return _copy(mock._runs.get(run_id))

    async def list_runs(evaluation_id=None, statuses=None, limit=1000):
        wanted = {EvaluationStatus(s) for s in statuses} if statuses else None
        runs = [
            _copy(r) for r in reversed(list(mock._runs.values()))
            if (evaluation_id is None or r.evaluation_id == evaluation_id)
            and (wanted is None or r.status in wanted)
        ]
        return runs[:limit]

    async def update_run(run):
        if mock.fail_update_run is not None:
            raise mock.fail_update_run
        mock._runs[run.id] = _copy(run)
        return run

    async def delete_run(run_id):
        if run_id not in mock._runs:
            return False
        del mock._runs[run_id]
        mock._results[:] = [r for r in mock._results if r.run_id != run_id]
        return True

    # Result operations
    async def append_result(run_id, result):
        if mock.fail_append_result is not None:
            raise mock.fail_append_result
        mock._results.append(_copy(result))
        return result

    async def list_results(run_id):
        return [_copy(r) for r in mock._results if r.run_id == run_id]

    # Prompt operations
    async def create_prompt(prompt):
        mock._prompts[prompt.id] = _copy(prompt)
        return prompt

    async def get_prompt(prompt_id):
        return _copy(mock._prompts.get(prompt_id))

    async def list_prompts(skip=0, limit=100):
        prompts = list(mock._prompts.values())
        return [_copy(p) for p in prompts[skip:skip + limit]]

    # Wire up the mock methods
    mock.create_evaluation = create_evaluation
    mock.get_evaluation = get_evaluation
    mock.list_evaluations = list_evaluations
    mock.update_evaluation = update_evaluation
    mock.delete_evaluation = delete_evaluation

    mock.create_testcase = create_testcase
    mock.get_testcase = get_testcase
    mock.list_testcases = list_testcases

    mock.create_criterion = create_criterion
    mock.list_criteria = list_criteria

    mock.create_run = create_run
    mock.get_run = get_run
    mock.list_runs = list_runs
    mock.update_run = update_run
    mock.delete_run = delete_run

    mock.append_result = append_result
    mock.list_results = list_results

    mock.create_prompt = create_prompt
    mock.get_prompt = get_prompt
    mock.list_prompts = list_prompts

    return mock


# ==============================================================================
# Services
# ==============================================================================

@pytest.fixture
def model_client():
    """Scripted model client: target replies "Mock answer", judge replies score 8."""
    return ScriptedModelClient()


@pytest.fixture
def evaluator_service(mock_db_service, model_client):
    from src.workbench.evaluator_service import EvaluatorService
    return EvaluatorService(mock_db_service, model_client=model_client)


@pytest.fixture
def workspace_service(mock_db_service, evaluator_service):
    from src.workbench.workspace_service import WorkspaceService
    return WorkspaceService(mock_db_service, evaluator_service)


@pytest.fixture
def seed_evaluation(mock_db_service):
    """Factory that stores an evaluation with test cases and criteria directly in the mock store.

    Returns (evaluation, test_cases, criteria).
    """
    from src.workbench.models import Evaluation, EvaluationConfig, EvaluationCriterion, TestCase

    def _seed(
        inputs=("What is 2+2?", "Name a primary color"),
        model_id=TARGET_MODEL,
        judge_model_id=None,
        criteria=(),
        prompt_id=None,
        config=None,
        expected=None,
    ):
        evaluation = Evaluation(
            name="Sample evaluation",
            model_id=model_id,
            judge_model_id=judge_model_id,
            prompt_id=prompt_id,
            config=config or EvaluationConfig(),
        )
        test_cases = [
            TestCase(
                evaluation_id=evaluation.id,
                name=f"Case {index + 1}",
                input_text=text,
                expected_output=expected,
                order_index=index,
            )
            for index, text in enumerate(inputs)
        ]
        criterion_models = [
            EvaluationCriterion(evaluation_id=evaluation.id, **c) for c in criteria
        ]
        mock_db_service._evaluations[evaluation.id] = evaluation.model_copy(deep=True)
        for tc in test_cases:
            mock_db_service._testcases[tc.id] = tc.model_copy(deep=True)
        for c in criterion_models:
            mock_db_service._criteria[c.id] = c.model_copy(deep=True)
        return evaluation, test_cases, criterion_models

    return _seed


# ==============================================================================
# FastAPI Test Client Fixtures
# ==============================================================================

@pytest.fixture
def app_with_mocks(mock_db_service, evaluator_service, workspace_service):
    """Create a minimal FastAPI app wired to the mock store and real services.

    Note: We create a simplified test app instead of importing the main app
    so the startup cleanup and module-level singletons are not involved.
    """
    from fastapi import FastAPI
    from src.workbench.controllers import router

    with patch('src.workbench.controllers.db', mock_db_service), \
         patch('src.workbench.controllers.evaluator', evaluator_service), \
         patch('src.workbench.controllers.workspace', workspace_service):

        test_app = FastAPI(title="Test API")
        test_app.include_router(router)

        @test_app.get("/")
        async def root():
            return {"message": "Prompt Workbench API", "docs": "/api/docs"}

        @test_app.get("/health")
        async def health():
            return {"status": "ok"}

        yield test_app, mock_db_service, evaluator_service


@pytest.fixture
def test_client(app_with_mocks):
    """Synchronous test client for simple endpoint tests."""
    app, _, _ = app_with_mocks
    with TestClient(app) as client:
        yield client


@pytest.fixture
async def async_client(app_with_mocks) -> AsyncGenerator[AsyncClient, None]:
    """Async test client; background runs share the test's event loop."""
    app, _, _ = app_with_mocks
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ==============================================================================
# Sample Test Data Fixtures
# ==============================================================================

@pytest.fixture
def sample_evaluation_request():
    """Sample evaluation creation request with nested test cases and criteria."""
    return {
        "name": "Support reply quality",
        "model_id": TARGET_MODEL,
        "judge_model_id": JUDGE_MODEL,
        "config": {"pass_threshold": 0.7},
        "test_cases": [
            {"name": "Refund", "input_text": "I want a refund", "expected_output": "Apologize and explain refunds"},
            {"name": "Shipping", "input_text": "Where is my order?", "input_variables": {"order": 1234}},
        ],
        "criteria": [
            {"name": "helpfulness", "prompt": "Rate {{output}} for {{input}}", "weight": 2.0},
            {"name": "tone", "prompt": "Is {{output}} polite?"},
        ],
    }


@pytest.fixture
def sample_testcase_request():
    """Sample test case creation request."""
    return {
        "name": "Greeting",
        "input_text": "Say hello to {{name}}",
        "input_variables": {"name": "Ada"},
        "expected_output": "Hello Ada",
    }


@pytest.fixture
def sample_criterion_request():
    """Sample criterion creation request."""
    return {
        "name": "accuracy",
        "description": "Matches the expected answer",
        "prompt": "Input: {{input}}\nOutput: {{output}}{{#expected}}\nExpected: {{expected}}{{/expected}}",
        "weight": 1.5,
    }


@pytest.fixture
def sample_prompt_request():
    """Sample prompt creation request."""
    return {
        "name": "Support prompt",
        "content": "You are a support agent for {{company}}.",
        "model_parameters": {"temperature": 0.2, "max_tokens": 256},
    }
