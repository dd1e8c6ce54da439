"""
Judge response parsers.

Judge models reply in free text. A parser turns that reply into a raw 0-10
score plus feedback. The regex parser is the default; the structured parser
is for judges run with JSON/schema-constrained output and rejects anything
that is not a single JSON object.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import logging
logger = logging.getLogger(__name__)

# First {...} span that mentions "score"; non-greedy on both sides.
_SCORE_OBJECT = re.compile(r'\{[\s\S]*?"score"[\s\S]*?\}')


@dataclass
class ParsedScore:
    """Raw judge verdict before normalization.

    Attributes:
        raw_score: Score as the judge reported it (expected range 0-10)
        feedback: The judge's reason, "" when absent
    """
    raw_score: float
    feedback: str


def _coerce(payload: Dict[str, Any]) -> ParsedScore:
    if "score" not in payload:
        raise ValueError("Judge response has no 'score' field")
    try:
        raw = float(payload["score"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Judge score is not numeric: {payload['score']!r}") from e
    if math.isnan(raw):
        raise ValueError("Judge score is NaN")
    reason = payload.get("reason")
    return ParsedScore(raw_score=raw, feedback="" if reason is None else str(reason))


class ScoreParser:
    """Strategy interface: parse(text) -> ParsedScore, raising ValueError on failure."""

    name = "base"

    def parse(self, text: str) -> ParsedScore:
        raise NotImplementedError


class RegexScoreParser(ScoreParser):
    """Best-effort extraction of the first JSON object containing "score"."""

    name = "regex"

    def parse(self, text: str) -> ParsedScore:
        match = _SCORE_OBJECT.search(text or "")
        if not match:
            raise ValueError("No JSON object with a score found in judge response")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Judge JSON could not be decoded: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("Judge JSON is not an object")
        return _coerce(payload)


class StructuredScoreParser(ScoreParser):
    """Strict parser for schema-constrained judge output.

    Accepts a bare JSON object, optionally inside one markdown code fence.
    Reasoning blocks (<think>...</think>) are stripped first.
    """

    name = "structured"

    def parse(self, text: str) -> ParsedScore:
        text = (text or "").strip()
        text = re.sub(r'<think>.*?</think>', '', text, flags=re.DOTALL).strip()

        fence_match = re.fullmatch(r'```(?:json)?\s*\n?(.*?)\n?\s*```', text, re.DOTALL)
        if fence_match:
            text = fence_match.group(1).strip()

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Judge output is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("Judge JSON is not an object")
        return _coerce(payload)


_PARSERS = {
    RegexScoreParser.name: RegexScoreParser,
    StructuredScoreParser.name: StructuredScoreParser,
}


def get_score_parser(name: Optional[str] = None) -> ScoreParser:
    """Return a parser by name; unknown or empty names give the regex parser."""
    parser_cls = _PARSERS.get((name or "").lower())
    if parser_cls is None:
        if name:
            logger.warning(f"Unknown score parser '{name}', using regex parser")
        parser_cls = RegexScoreParser
    return parser_cls()
