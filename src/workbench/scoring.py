"""
Judge scoring and score aggregation.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. PER-CRITERION JUDGE SCORING (Feature: judge-scoring)
   - Renders each enabled criterion's prompt and asks the judge model
   - Raw 0-10 score is clamped and normalized to 0-1
   - A failed criterion scores 0 with a fixed marker and never stops the others

2. SCORE AGGREGATION (Feature: score-aggregation)
   - Weighted average over enabled criteria that produced a score
   - No scored criteria (or zero total weight) counts as a perfect 1.0
   - Run summary: per-criterion mean, total/passed counts, rounded pass rate

==============================================================================
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .model_client import ModelClient
from .models import EvaluationCriterion, RunSummary, TestCase, TestCaseResult
from .response_parser import ScoreParser, get_score_parser
from .templates import render_criterion_prompt
from . import config

import logging
logger = logging.getLogger(__name__)


@dataclass
class CriterionScore:
    score: float
    feedback: str
    failed: bool = False


@dataclass
class CaseScores:
    """Scores and feedback of one test case, keyed by criterion name."""
    scores: Dict[str, float] = field(default_factory=dict)
    feedback: Dict[str, str] = field(default_factory=dict)


def normalize_score(raw_score: float) -> float:
    """Clamp a 0-10 judge score and scale it to 0-1."""
    return max(0.0, min(10.0, raw_score)) / 10.0


class JudgeScorer:
    def __init__(self, model_client: ModelClient, parser: Optional[ScoreParser] = None):
        self.model_client = model_client
        self.parser = parser or get_score_parser(config.SCORE_PARSER)

    async def score(
        self,
        criterion: EvaluationCriterion,
        test_case: TestCase,
        model_output: str,
        judge_model_id: str,
    ) -> CriterionScore:
        """Score one criterion. Failures are folded into a zero score, never raised."""
        prompt = render_criterion_prompt(
            criterion.prompt,
            test_case.input_text,
            model_output,
            test_case.expected_output,
        )
        try:
            completion = await self.model_client.complete(
                judge_model_id,
                [{"role": "user", "content": prompt}],
            )
            parsed = self.parser.parse(completion.content)
        except Exception as e:
            logger.warning(
                f"Criterion '{criterion.name}' failed for test case {test_case.id}: {str(e)[:200]}"
            )
            return CriterionScore(score=0.0, feedback=config.CRITERION_FAILED_MESSAGE, failed=True)

        return CriterionScore(score=normalize_score(parsed.raw_score), feedback=parsed.feedback)

    async def score_all(
        self,
        criteria: Iterable[EvaluationCriterion],
        test_case: TestCase,
        model_output: str,
        judge_model_id: str,
    ) -> CaseScores:
        result = CaseScores()
        for criterion in criteria:
            if not criterion.enabled:
                continue
            outcome = await self.score(criterion, test_case, model_output, judge_model_id)
            result.scores[criterion.name] = outcome.score
            result.feedback[criterion.name] = outcome.feedback
        return result


# ==============================================================================
# AGGREGATION (Feature: score-aggregation)
# ==============================================================================

def weighted_average(scores: Dict[str, float], criteria: Iterable[EvaluationCriterion]) -> float:
    """Σ(score × weight) / Σ(weight) over enabled, scored criteria; 1.0 if nothing counts."""
    total = 0.0
    total_weight = 0.0
    for criterion in criteria:
        if not criterion.enabled or criterion.name not in scores:
            continue
        total += scores[criterion.name] * criterion.weight
        total_weight += criterion.weight
    if total_weight <= 0:
        return 1.0
    return total / total_weight


def resolve_threshold(pass_threshold: Optional[float]) -> float:
    return config.DEFAULT_PASS_THRESHOLD if pass_threshold is None else pass_threshold


def is_passed(average: float, pass_threshold: Optional[float] = None) -> bool:
    return average >= resolve_threshold(pass_threshold)


def summarize_run(results: List[TestCaseResult]) -> RunSummary:
    """Aggregate a run's results into a RunSummary.

    The score for each criterion is the mean over the results that carry it;
    a criterion the judge failed on contributes its recorded 0.
    """
    totals: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    for result in results:
        for name, score in result.scores.items():
            totals[name] = totals.get(name, 0.0) + score
            counts[name] = counts.get(name, 0) + 1

    total_cases = len(results)
    passed_cases = sum(1 for r in results if r.passed)
    pass_rate = round(passed_cases / total_cases * 100) if total_cases else 0

    return RunSummary(
        scores={name: totals[name] / counts[name] for name in totals},
        total_cases=total_cases,
        passed_cases=passed_cases,
        pass_rate=pass_rate,
        summary=f"{passed_cases}/{total_cases} passed ({pass_rate}%)",
    )


def summarize_single_case(result: TestCaseResult, aborted: bool = False) -> RunSummary:
    summary = summarize_run([result])
    if aborted:
        summary.summary = "Single test aborted"
    else:
        summary.summary = f"Single test complete, {'passed' if result.passed else 'not passed'}"
    return summary
