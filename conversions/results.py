from dataclasses import dataclass
from typing import Any, Optional


class ObjectStoreError(Exception):
    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


@dataclass(frozen=True)
class StoreResult:
    """
    Outcome of an object store call.

    Strict callers use unwrap(), which raises ObjectStoreError on failure.
    Best-effort callers (background reconciliation) check .ok instead so one
    bad object does not abort the whole batch.
    """
    ok: bool
    value: Any = None
    status_code: Optional[int] = None
    error: str = ""
    code: Optional[str] = None

    @classmethod
    def success(cls, value=None, status_code: Optional[int] = None) -> "StoreResult":
        return cls(ok=True, value=value, status_code=status_code)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None, code: Optional[str] = None) -> "StoreResult":
        return cls(ok=False, error=error, status_code=status_code, code=code)

    def unwrap(self):
        if not self.ok:
            raise ObjectStoreError(self.error, status_code=self.status_code, code=self.code)
        return self.value

    def value_or(self, default):
        return self.value if self.ok else default
