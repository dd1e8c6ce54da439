"""
Cancellation token registry for in-flight runs.

Each live run owns one CancellationToken. The run loop keeps a reference to
its token and checks it between test cases, so releasing the registry entry
does not hide an abort from the loop that is still winding down.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

import logging
logger = logging.getLogger(__name__)


@dataclass
class CancellationToken:
    run_id: str
    aborted: bool = False
    aborted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def abort(self) -> None:
        if not self.aborted:
            self.aborted = True
            self.aborted_at = datetime.now(timezone.utc)


class CancellationRegistry:
    """One live token per run id, dropped once the run is terminal."""

    def __init__(self):
        self._tokens: Dict[str, CancellationToken] = {}

    def create(self, run_id: str) -> CancellationToken:
        if run_id in self._tokens:
            logger.warning(f"Replacing existing cancellation token for run {run_id}")
        token = CancellationToken(run_id=run_id)
        self._tokens[run_id] = token
        return token

    def get(self, run_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(run_id)

    def abort(self, run_id: str) -> bool:
        """Flip the run's token. Returns False when the run has no live token."""
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.abort()
        logger.info(f"Run {run_id} flagged as aborted")
        return True

    def is_aborted(self, run_id: str) -> bool:
        token = self._tokens.get(run_id)
        return token is not None and token.aborted

    def release(self, run_id: str) -> None:
        self._tokens.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
