"""
Player Statistics Validation

Pure sanity checks applied before a record is written and after a row is
read back. A record that fails validation is never written; a stored row
that fails validation is treated as corrupted and replaced by a fresh
record on load.

Usage Example:
    result = validate_statistics(stats)
    if not result:
        logger.warning(f"Rejected stats: {result.issues}")
"""

import math
from dataclasses import dataclass, field
from typing import List

from .player_statistics import COUNTER_FIELDS, TIMING_FIELDS, PlayerStatistics


MAX_KILLS = 10_000
MAX_DEATHS = 10_000
MAX_BASES_CAPTURED = 5_000
MAX_TOTAL_XP = 1_000_000
MAX_SESSION_SECONDS = 30 * 24 * 60 * 60

CEILINGS = {
    "kills": MAX_KILLS,
    "deaths": MAX_DEATHS,
    "bases_captured": MAX_BASES_CAPTURED,
    "total_xp": MAX_TOTAL_XP,
}


@dataclass
class ValidationResult:
    """
    Result of validating one statistics record.

    Truthy when the record is valid.
    """
    valid: bool
    issues: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid

    def summary(self) -> str:
        return "valid" if self.valid else "; ".join(self.issues)


def validate_statistics(stats: PlayerStatistics) -> ValidationResult:
    """
    Check counters, ceilings, session timing and death-history shape.

    Args:
        stats: Record to check

    Returns:
        ValidationResult listing every problem found
    """
    if stats is None:
        return ValidationResult(valid=False, issues=["record is missing"])

    issues: List[str] = []

    for name in COUNTER_FIELDS:
        value = getattr(stats, name)
        if not isinstance(value, int) or isinstance(value, bool):
            issues.append(f"{name} is not an integer ({value!r})")
        elif value < 0:
            issues.append(f"{name} is negative ({value})")

    for name, ceiling in CEILINGS.items():
        value = getattr(stats, name)
        if isinstance(value, int) and value > ceiling:
            issues.append(f"{name} exceeds {ceiling} ({value})")

    for name in TIMING_FIELDS:
        value = getattr(stats, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            issues.append(f"{name} is not a number ({value!r})")
        elif not math.isfinite(value):
            issues.append(f"{name} is not finite ({value})")
        elif value < 0:
            issues.append(f"{name} is negative ({value})")

    session = stats.last_session_duration
    if isinstance(session, (int, float)) and session > MAX_SESSION_SECONDS:
        issues.append(f"last_session_duration exceeds 30 days ({session})")

    lengths = {len(stats.killed_by), len(stats.killed_by_weapon), len(stats.killed_by_team)}
    if len(lengths) != 1:
        issues.append(
            "death history sequences differ in length "
            f"(killed_by={len(stats.killed_by)}, killed_by_weapon={len(stats.killed_by_weapon)}, "
            f"killed_by_team={len(stats.killed_by_team)})"
        )

    return ValidationResult(valid=not issues, issues=issues)
