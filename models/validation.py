"""Validation models and enums for file processing."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

# Scores below this floor are unsafe even when no single check failed hard
SAFETY_FLOOR = 30


class ValidationStatus(Enum):
    """Enumeration for file validation statuses."""
    VALID = "valid"
    SUSPICIOUS = "suspicious"
    INVALID = "invalid"


@dataclass
class ValidationResult:
    """Verdict of the security validator for a single file."""
    safe: bool = True
    score: int = 100
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    file_hash: str = ""
    detected_mime_type: Optional[str] = None

    @property
    def status(self) -> ValidationStatus:
        if not self.safe:
            return ValidationStatus.INVALID
        if self.warnings:
            return ValidationStatus.SUSPICIOUS
        return ValidationStatus.VALID

    def penalize(self, points: int) -> None:
        self.score = max(0, min(100, self.score - points))

    def fail(self, reason: str, penalty: int = 0, zero_score: bool = False) -> None:
        """Record a hard failure."""
        self.safe = False
        self.errors.append(reason)
        if self.reason is None:
            self.reason = reason
        if zero_score:
            self.score = 0
        else:
            self.penalize(penalty)

    def warn(self, message: str, penalty: int = 0) -> None:
        self.warnings.append(message)
        self.penalize(penalty)

    def apply_floor(self, floor: int = SAFETY_FLOOR) -> None:
        """Mark the result unsafe when accumulated penalties sink below the floor."""
        if self.safe and self.score < floor:
            self.safe = False
            self.reason = "Security score too low"
            self.errors.append(self.reason)
