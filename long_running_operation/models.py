import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OperationStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


class HttpResponse(BaseModel):
    """Snapshot of an HTTP response observed while polling an operation"""

    model_config = ConfigDict(frozen=True)

    status: int
    reason: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    content: bytes = b""

    def get_header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json_body(self) -> Any:
        return json.loads(self.content) if self.content else None


class OperationState(BaseModel):
    """Outcome of a single status check.

    Build instances through `success`, `failure` or `pending`; the completed and
    succeeded flags are derived from `status`, so a succeeded-but-not-completed
    state cannot exist.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    raw_response: Any
    status: OperationStatus
    operation_failed_error: Optional[BaseException] = None

    @field_validator("raw_response")
    @classmethod
    def check_raw_response(cls, value: Any) -> Any:
        _assert_not_none(value)
        return value

    def model_copy(self, *, update=None, deep: bool = False) -> "OperationState":
        # model_copy skips validation
        copy = super().model_copy(update=update, deep=deep)
        _assert_not_none(copy.raw_response)
        return copy

    @property
    def has_completed(self) -> bool:
        return self.status != OperationStatus.pending

    @property
    def has_succeeded(self) -> bool:
        return self.status == OperationStatus.succeeded

    @classmethod
    def success(cls, raw_response: Any) -> "OperationState":
        _assert_not_none(raw_response)
        return cls(raw_response=raw_response, status=OperationStatus.succeeded)

    @classmethod
    def failure(
        cls, raw_response: Any, operation_failed_error: Optional[BaseException] = None
    ) -> "OperationState":
        """The cause is optional; when omitted the driver builds one from the response"""
        _assert_not_none(raw_response)
        return cls(
            raw_response=raw_response,
            status=OperationStatus.failed,
            operation_failed_error=operation_failed_error,
        )

    @classmethod
    def pending(cls, raw_response: Any) -> "OperationState":
        _assert_not_none(raw_response)
        return cls(raw_response=raw_response, status=OperationStatus.pending)


def _assert_not_none(raw_response: Any) -> None:
    if raw_response is None:
        raise ValueError("raw_response cannot be None")


class PollingConfig(BaseModel):
    default_polling_interval: float = Field(default=1.0, ge=0)  # seconds
