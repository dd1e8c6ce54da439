"""
SQLite-backed evaluation store.

Uses a single SQLite database with JSON documents stored per table, plus the
foreign-key columns needed for lookups and cascades. Fully local, no cloud
dependencies.
"""

import aiosqlite
import json
import os
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from .errors import PersistenceError
from .models import (
    Evaluation, EvaluationCriterion, EvaluationRun, EvaluationStatus,
    ModelParameters, Prompt, TestCase, TestCaseResult,
)
from . import config

import logging
logger = logging.getLogger(__name__)


class SQLiteService:
    """Local SQLite storage for evaluations, test cases, criteria, runs and results."""

    def __init__(self, db_path: str = None):
        self._db_path = db_path or config.SQLITE_DB_PATH
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized:
            return
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS evaluations (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS test_cases (
                    id TEXT PRIMARY KEY,
                    evaluation_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS criteria (
                    id TEXT PRIMARY KEY,
                    evaluation_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    evaluation_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS results (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    evaluation_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS prompts (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tc_evaluation ON test_cases(evaluation_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_criteria_evaluation ON criteria(evaluation_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_evaluation ON runs(evaluation_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(json_extract(data, '$.status'))")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_results_run ON results(run_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_results_evaluation ON results(evaluation_id)")
            await db.commit()
        self._initialized = True

    def _conn(self) -> aiosqlite.Connection:
        """Return an aiosqlite connection context manager (do NOT await here)."""
        return aiosqlite.connect(self._db_path)

    # ===== Evaluation CRUD =====

    async def create_evaluation(
        self,
        evaluation: Evaluation,
        test_cases: Sequence[TestCase] = (),
        criteria: Sequence[EvaluationCriterion] = (),
    ) -> Evaluation:
        """Insert an evaluation together with its test cases and criteria in one transaction."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO evaluations (id, data) VALUES (?, ?)",
                (evaluation.id, evaluation.model_dump_json())
            )
            for tc in test_cases:
                await db.execute(
                    "INSERT INTO test_cases (id, evaluation_id, data) VALUES (?, ?, ?)",
                    (tc.id, evaluation.id, tc.model_dump_json())
                )
            for criterion in criteria:
                await db.execute(
                    "INSERT INTO criteria (id, evaluation_id, data) VALUES (?, ?, ?)",
                    (criterion.id, evaluation.id, criterion.model_dump_json())
                )
            await db.commit()
        return evaluation

    async def get_evaluation(self, evaluation_id: str) -> Optional[Evaluation]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM evaluations WHERE id = ?", (evaluation_id,))
            row = await cursor.fetchone()
            if row:
                return Evaluation(**json.loads(row[0]))
            return None

    async def list_evaluations(self, skip: int = 0, limit: int = 100) -> List[Evaluation]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM evaluations ORDER BY json_extract(data, '$.created_at') DESC LIMIT ? OFFSET ?",
                (limit, skip)
            )
            rows = await cursor.fetchall()
            return [Evaluation(**json.loads(r[0])) for r in rows]

    async def update_evaluation(self, evaluation: Evaluation) -> Evaluation:
        await self._ensure_initialized()
        evaluation.updated_at = datetime.now(timezone.utc)
        try:
            async with self._conn() as db:
                await db.execute(
                    "UPDATE evaluations SET data = ? WHERE id = ?",
                    (evaluation.model_dump_json(), evaluation.id)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to update evaluation {evaluation.id}: {e}") from e
        return evaluation

    async def delete_evaluation(self, evaluation_id: str) -> bool:
        """Delete an evaluation with its test cases, criteria, runs and results."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute("DELETE FROM results WHERE evaluation_id = ?", (evaluation_id,))
            await db.execute("DELETE FROM runs WHERE evaluation_id = ?", (evaluation_id,))
            await db.execute("DELETE FROM criteria WHERE evaluation_id = ?", (evaluation_id,))
            await db.execute("DELETE FROM test_cases WHERE evaluation_id = ?", (evaluation_id,))
            cursor = await db.execute("DELETE FROM evaluations WHERE id = ?", (evaluation_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ===== TestCase CRUD =====

    async def create_testcase(self, test_case: TestCase) -> TestCase:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO test_cases (id, evaluation_id, data) VALUES (?, ?, ?)",
                (test_case.id, test_case.evaluation_id, test_case.model_dump_json())
            )
            await db.commit()
        return test_case

    async def get_testcase(self, testcase_id: str) -> Optional[TestCase]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM test_cases WHERE id = ?", (testcase_id,))
            row = await cursor.fetchone()
            if row:
                return TestCase(**json.loads(row[0]))
            return None

    async def list_testcases(self, evaluation_id: str) -> List[TestCase]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM test_cases WHERE evaluation_id = ? "
                "ORDER BY json_extract(data, '$.order_index'), rowid",
                (evaluation_id,)
            )
            rows = await cursor.fetchall()
            return [TestCase(**json.loads(r[0])) for r in rows]

    async def update_testcase(self, test_case: TestCase) -> TestCase:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE test_cases SET data = ? WHERE id = ?",
                (test_case.model_dump_json(), test_case.id)
            )
            await db.commit()
        return test_case

    async def delete_testcase(self, testcase_id: str) -> bool:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("DELETE FROM test_cases WHERE id = ?", (testcase_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ===== Criterion CRUD =====

    async def create_criterion(self, criterion: EvaluationCriterion) -> EvaluationCriterion:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO criteria (id, evaluation_id, data) VALUES (?, ?, ?)",
                (criterion.id, criterion.evaluation_id, criterion.model_dump_json())
            )
            await db.commit()
        return criterion

    async def get_criterion(self, criterion_id: str) -> Optional[EvaluationCriterion]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM criteria WHERE id = ?", (criterion_id,))
            row = await cursor.fetchone()
            if row:
                return EvaluationCriterion(**json.loads(row[0]))
            return None

    async def list_criteria(self, evaluation_id: str) -> List[EvaluationCriterion]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM criteria WHERE evaluation_id = ? ORDER BY rowid",
                (evaluation_id,)
            )
            rows = await cursor.fetchall()
            return [EvaluationCriterion(**json.loads(r[0])) for r in rows]

    async def update_criterion(self, criterion: EvaluationCriterion) -> EvaluationCriterion:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE criteria SET data = ? WHERE id = ?",
                (criterion.model_dump_json(), criterion.id)
            )
            await db.commit()
        return criterion

    async def delete_criterion(self, criterion_id: str) -> bool:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("DELETE FROM criteria WHERE id = ?", (criterion_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ===== Run CRUD =====

    async def create_run(self, evaluation_id: str, model_parameters: Optional[ModelParameters] = None) -> EvaluationRun:
        """Create a pending run for an evaluation."""
        await self._ensure_initialized()
        run = EvaluationRun(evaluation_id=evaluation_id, model_parameters=model_parameters)
        try:
            async with self._conn() as db:
                await db.execute(
                    "INSERT INTO runs (id, evaluation_id, data) VALUES (?, ?, ?)",
                    (run.id, evaluation_id, run.model_dump_json())
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to create run for evaluation {evaluation_id}: {e}") from e
        return run

    async def get_run(self, run_id: str) -> Optional[EvaluationRun]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
            if row:
                return EvaluationRun(**json.loads(row[0]))
            return None

    async def list_runs(
        self,
        evaluation_id: Optional[str] = None,
        statuses: Optional[Sequence[EvaluationStatus]] = None,
        limit: int = 1000,
    ) -> List[EvaluationRun]:
        """Runs newest first, optionally filtered by evaluation and status."""
        await self._ensure_initialized()
        clauses = []
        params: list = []
        if evaluation_id:
            clauses.append("evaluation_id = ?")
            params.append(evaluation_id)
        if statuses:
            clauses.append(f"json_extract(data, '$.status') IN ({', '.join('?' for _ in statuses)})")
            params.extend(EvaluationStatus(s).value for s in statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._conn() as db:
            cursor = await db.execute(
                f"SELECT data FROM runs {where} ORDER BY json_extract(data, '$.created_at') DESC, rowid DESC LIMIT ?",
                (*params, limit)
            )
            rows = await cursor.fetchall()
            return [EvaluationRun(**json.loads(r[0])) for r in rows]

    async def update_run(self, run: EvaluationRun) -> EvaluationRun:
        await self._ensure_initialized()
        try:
            async with self._conn() as db:
                await db.execute(
                    "UPDATE runs SET data = ? WHERE id = ?",
                    (run.model_dump_json(), run.id)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to update run {run.id}: {e}") from e
        return run

    async def delete_run(self, run_id: str) -> bool:
        """Delete a run and its results."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute("DELETE FROM results WHERE run_id = ?", (run_id,))
            cursor = await db.execute("DELETE FROM runs WHERE id = ?", (run_id,))
            await db.commit()
            return cursor.rowcount > 0

    # ===== Results (append-only) =====

    async def append_result(self, run_id: str, result: TestCaseResult) -> TestCaseResult:
        await self._ensure_initialized()
        if result.run_id != run_id:
            result = result.model_copy(update={"run_id": run_id})
        try:
            async with self._conn() as db:
                await db.execute(
                    "INSERT INTO results (id, run_id, evaluation_id, data) VALUES (?, ?, ?, ?)",
                    (result.id, run_id, result.evaluation_id, result.model_dump_json())
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to store result for test case {result.test_case_id}: {e}") from e
        return result

    async def list_results(self, run_id: str) -> List[TestCaseResult]:
        """Results of a run in append order."""
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM results WHERE run_id = ? ORDER BY rowid",
                (run_id,)
            )
            rows = await cursor.fetchall()
            return [TestCaseResult(**json.loads(r[0])) for r in rows]

    # ===== Prompts =====

    async def create_prompt(self, prompt: Prompt) -> Prompt:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO prompts (id, data) VALUES (?, ?)",
                (prompt.id, prompt.model_dump_json())
            )
            await db.commit()
        return prompt

    async def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM prompts WHERE id = ?", (prompt_id,))
            row = await cursor.fetchone()
            if row:
                return Prompt(**json.loads(row[0]))
            return None

    async def list_prompts(self, skip: int = 0, limit: int = 100) -> List[Prompt]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM prompts ORDER BY json_extract(data, '$.created_at') DESC LIMIT ? OFFSET ?",
                (limit, skip)
            )
            rows = await cursor.fetchall()
            return [Prompt(**json.loads(r[0])) for r in rows]


# Singleton
_service: Optional[SQLiteService] = None


def get_db_service() -> SQLiteService:
    global _service
    if not _service:
        _service = SQLiteService()
    return _service
