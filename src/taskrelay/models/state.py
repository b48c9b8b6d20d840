"""Result of checking the task document."""

from dataclasses import dataclass, field
from typing import Dict, Any, List


@dataclass
class ValidationResult:
    """Problems found in ``tasks.json``.

    Errors make the document unusable as-is (corruption, duplicate ids,
    broken histories); warnings are dangling references worth a look.
    """
    valid: bool = True
    tasks_checked: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, error: str) -> None:
        self.errors.append(error)
        self.valid = False

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def summary(self) -> str:
        state = "ok" if self.valid else "invalid"
        return (
            f"{self.tasks_checked} task(s) checked: {state}, "
            f"{len(self.errors)} error(s), {len(self.warnings)} warning(s)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "tasks_checked": self.tasks_checked,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }
