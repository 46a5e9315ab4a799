import asyncio
import json
import time
from typing import Any, Dict, Optional, Tuple

from loguru import logger
from long_running_operation.exceptions import RequestFailedError


class DiagnosticScope:
    """Tracing span around a single service call.

    Use as a context manager: leaving the block marks the scope done, or failed
    when an exception escapes and `failed` was not already called.
    """

    def __init__(self, name: str, namespace: Optional[str] = None):
        self.name = name
        self.namespace = namespace
        self.attributes: Dict[str, str] = {}
        self.is_started = False
        self.error: Optional[BaseException] = None
        self.logger = logger.bind(scope=name)
        self._start_time: Optional[float] = None

    def add_attribute(self, key: str, value: str) -> None:
        self.attributes[key] = value

    def start(self) -> None:
        self.is_started = True
        self._start_time = time.monotonic()
        self.logger.debug(f"Scope {self.name} started")

    def failed(self, error: BaseException) -> None:
        self.error = error
        if isinstance(error, asyncio.CancelledError):
            self.logger.warning(f"Scope {self.name} cancelled")
        else:
            self.logger.error(f"Scope {self.name} failed: {error!r}")

    @property
    def elapsed_time(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.monotonic() - self._start_time

    def dispose(self) -> None:
        if self.is_started and self.error is None:
            self.logger.debug(
                f"Scope {self.name} completed in {self.elapsed_time:.3f}s "
                f"attributes={self.attributes}"
            )

    def __enter__(self) -> "DiagnosticScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None and self.error is None:
            self.failed(exc)
        self.dispose()


class ClientDiagnostics:
    """Creates diagnostic scopes and builds errors from failed responses"""

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace
        self.logger = logger

    def create_scope(self, name: str) -> DiagnosticScope:
        return DiagnosticScope(name, namespace=self.namespace)

    def create_request_failed_error(
        self, response: Any, message: Optional[str] = None
    ) -> RequestFailedError:
        status = getattr(response, "status", 0)
        reason = getattr(response, "reason", "")
        error_code, error_message = _extract_error(response)

        lines = [message or error_message or "Service request failed."]
        lines.append(f"Status: {status}" + (f" ({reason})" if reason else ""))
        if error_code:
            lines.append(f"ErrorCode: {error_code}")

        text = getattr(response, "text", "")
        if text:
            lines.extend(["", "Content:", text])

        headers = getattr(response, "headers", None) or {}
        if headers:
            lines.extend(["", "Headers:"])
            lines.extend(f"{key}: {value}" for key, value in headers.items())

        return RequestFailedError(
            "\n".join(lines),
            status=status,
            error_code=error_code,
            response=response,
        )

    async def create_request_failed_error_async(
        self, response: Any, message: Optional[str] = None
    ) -> RequestFailedError:
        # Response content is already buffered; there is nothing left to read.
        return self.create_request_failed_error(response, message)


def _extract_error(response: Any) -> Tuple[Optional[str], Optional[str]]:
    """Pulls `error.code` and `error.message` out of a JSON error body"""
    content = getattr(response, "content", b"")
    if not content:
        return None, None
    try:
        body = json.loads(content)
    except (ValueError, TypeError):
        return None, None

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return None, None
    code = error.get("code")
    message = error.get("message")
    return (
        str(code) if code is not None else None,
        str(message) if message is not None else None,
    )
