from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Result codes surfaced to callers; the API maps each to an HTTP status.
VALIDATION_ERROR = "validation_error"
NOT_FOUND = "not_found"
ALREADY_RESOLVED = "already_resolved"
UNSUPPORTED_ENTITY = "unsupported_entity"
RECONNECT_REQUIRED = "reconnect_required"
SYNC_IN_PROGRESS = "sync_in_progress"
REMOTE_ERROR = "remote_error"


@dataclass
class ActionResult:
    """Outcome of a mapping, conflict or integration operation.

    Validation and state failures are returned, not raised, so callers must
    check ``success`` before reading ``data``.
    """

    success: bool
    code: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, error: str) -> "ActionResult":
        return cls(success=False, code=code, error=error)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.code:
            out["code"] = self.code
        if self.error:
            out["error"] = self.error
        out.update(self.data)
        return out
