"""
Run summary shared by the periodic jobs.

Every job run returns one of these so the operator script and the periodic
runner can report what happened without the job ever raising.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class JobSummary:
    """
    Counters for one job run.

    Attributes:
        job: Job name (start_sweep, end_sweep, ...)
        found: Candidates the job looked at
        succeeded: Candidates the job acted on successfully
        skipped: Candidates another path had already handled
        failed: Candidates that failed after retries
        errors: One message per failure
    """
    job: str
    found: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "found": self.found,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }
