from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    INVALID_CSV = "INVALID_CSV"
    MISSING_COLUMNS = "MISSING_COLUMNS"
    EMPTY_DATA = "EMPTY_DATA"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"


class ReconError(Exception):
    """Base exception with structured error info."""

    def __init__(self, code: ErrorCode, message: str, context: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code.value, "message": self.message}
        if self.context:
            result["context"] = self.context
        return result


class InputError(ReconError):
    """Malformed file, missing columns or nothing usable after parsing. Fails the run."""

    def __init__(self, message: str, source: str, code: ErrorCode = ErrorCode.INVALID_CSV):
        super().__init__(code, message, context={"source": source})
        self.source = source


class MissingColumnsError(InputError):
    def __init__(self, source: str, missing: List[str]):
        super().__init__(
            f"Missing required columns in {source}: {missing}",
            source,
            code=ErrorCode.MISSING_COLUMNS,
        )
        self.missing = missing


class EmptyDatasetError(InputError):
    def __init__(self, source: str):
        super().__init__(f"{source} does not contain any valid rows", source, code=ErrorCode.EMPTY_DATA)


class StateError(ReconError):
    """Run or chunk state does not allow the requested transition."""

    def __init__(self, message: str, run_id: str, code: ErrorCode = ErrorCode.INVALID_STATE):
        super().__init__(code, message, context={"run_id": run_id})
        self.run_id = run_id
