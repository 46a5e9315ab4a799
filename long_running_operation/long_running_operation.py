import abc
import asyncio
import re
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from loguru import logger
from long_running_operation.cancellation import CancellationToken
from long_running_operation.diagnostics import ClientDiagnostics
from long_running_operation.models import OperationState, PollingConfig

RETRY_AFTER_HEADER = "Retry-After"
RETRY_AFTER_MS_HEADER = "retry-after-ms"
X_MS_RETRY_AFTER_MS_HEADER = "x-ms-retry-after-ms"

_INTEGER = re.compile(r"^\s*[+-]?[0-9]+\s*$", re.ASCII)
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1

ScopeAttributes = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


class Operation(abc.ABC):
    """A long-running operation that knows how to check its own status.

    Implementations make exactly one service call per `update_state` and
    describe the outcome with an `OperationState`. They never touch the
    driver's fields; `OperationDriver` interprets the returned state.
    """

    @abc.abstractmethod
    async def update_state(
        self, async_mode: bool, cancellation_token: CancellationToken
    ) -> OperationState:
        """Calls the service once and reports the operation's current state.

        `async_mode` is False when the caller used a blocking entry point, in
        which case the service call should be made with a blocking client.
        """


class OperationDriver:
    """Polls an `Operation` until it reaches a terminal state.

    Owns the completed flag, the last raw response and the failure cause of
    one long-running operation. Instances are not safe for concurrent use:
    run one polling flow at a time per driver.
    """

    def __init__(
        self,
        client_diagnostics: ClientDiagnostics,
        operation: Operation,
        raw_response: Any,
        operation_type_name: Optional[str] = None,
        scope_attributes: Optional[ScopeAttributes] = None,
        config: Optional[PollingConfig] = None,
    ):
        operation_type_name = operation_type_name or type(operation).__name__
        config = config or PollingConfig()

        self._operation = operation
        self._diagnostics = client_diagnostics
        self._update_status_scope_name = f"{operation_type_name}.UpdateStatus"
        self._scope_attributes = (
            dict(scope_attributes) if scope_attributes is not None else None
        )
        self._has_completed = False
        self._failure: Optional[BaseException] = None
        self._default_polling_interval = config.default_polling_interval
        self.raw_response = raw_response
        self.logger = logger

    @property
    def has_completed(self) -> bool:
        return self._has_completed

    @property
    def failure(self) -> Optional[BaseException]:
        """The error raised when the operation was first seen to fail"""
        return self._failure

    @property
    def default_polling_interval(self) -> float:
        return self._default_polling_interval

    @default_polling_interval.setter
    def default_polling_interval(self, value: float) -> None:
        if value < 0:
            raise ValueError("default_polling_interval must be non-negative")
        self._default_polling_interval = value

    @property
    def update_status_scope_name(self) -> str:
        return self._update_status_scope_name

    async def update_status(
        self, cancellation_token: Optional[CancellationToken] = None
    ) -> Any:
        """Checks the operation status once and returns the latest raw response.

        Raises the operation's failure if it is seen to have failed, and
        propagates any error from the service call unchanged.
        """
        return await self._update_status(True, cancellation_token or CancellationToken.none())

    def update_status_sync(
        self, cancellation_token: Optional[CancellationToken] = None
    ) -> Any:
        """Blocking variant of `update_status`; must not be called from a running event loop"""
        return asyncio.run(
            self._update_status(False, cancellation_token or CancellationToken.none())
        )

    async def wait_for_completion(
        self,
        polling_interval: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Polls until the operation completes and returns the final raw response.

        The wait between polls is `polling_interval` (the driver's default when
        omitted), lengthened when the service sends a retry-after hint.
        """
        return await self._wait_for_completion(
            True,
            self._default_polling_interval if polling_interval is None else polling_interval,
            cancellation_token or CancellationToken.none(),
        )

    def wait_for_completion_sync(
        self,
        polling_interval: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Any:
        return asyncio.run(
            self._wait_for_completion(
                False,
                self._default_polling_interval if polling_interval is None else polling_interval,
                cancellation_token or CancellationToken.none(),
            )
        )

    async def _wait_for_completion(
        self,
        async_mode: bool,
        polling_interval: float,
        cancellation_token: CancellationToken,
    ) -> Any:
        if polling_interval < 0:
            raise ValueError("polling_interval must be non-negative")

        while True:
            response = await self._update_status(async_mode, cancellation_token)

            if self._has_completed:
                return response

            delay = self.get_server_delay(response, polling_interval)
            self.logger.debug(
                f"{self._update_status_scope_name}: operation still pending, "
                f"waiting {delay:.2f}s before next attempt"
            )
            await self._wait(delay, cancellation_token)

    async def _wait(self, delay: float, cancellation_token: CancellationToken) -> None:
        await cancellation_token.sleep(delay)

    async def _update_status(
        self, async_mode: bool, cancellation_token: CancellationToken
    ) -> Any:
        with self._diagnostics.create_scope(self._update_status_scope_name) as scope:
            if self._scope_attributes:
                for key, value in self._scope_attributes.items():
                    scope.add_attribute(key, value)

            scope.start()

            try:
                cancellation_token.raise_if_cancellation_requested()
                return await self._update_state(async_mode, cancellation_token)
            except BaseException as e:
                scope.failed(e)
                raise

    async def _update_state(
        self, async_mode: bool, cancellation_token: CancellationToken
    ) -> Any:
        state = await self._operation.update_state(async_mode, cancellation_token)

        self.raw_response = state.raw_response
        self.logger.debug(f"{self._update_status_scope_name}: status is {state.status.value}")

        if state.has_completed:
            if state.has_succeeded:
                self._has_completed = True
            else:
                if state.operation_failed_error is not None:
                    failure = state.operation_failed_error
                elif async_mode:
                    failure = await self._diagnostics.create_request_failed_error_async(
                        state.raw_response
                    )
                else:
                    failure = self._diagnostics.create_request_failed_error(
                        state.raw_response
                    )
                if self._failure is None:
                    self._failure = failure
                self._has_completed = True

                raise failure

        return state.raw_response

    @staticmethod
    def get_server_delay(response: Any, polling_interval: float) -> float:
        """Returns the wait before the next poll, honouring retry-after headers.

        The millisecond headers take precedence over `Retry-After`. A server
        hint never shortens the wait below `polling_interval`.
        """
        server_delay = polling_interval

        retry_after = response.get_header(RETRY_AFTER_MS_HEADER)
        if retry_after is None:
            retry_after = response.get_header(X_MS_RETRY_AFTER_MS_HEADER)

        if retry_after is not None:
            milliseconds = _parse_int32(retry_after)
            if milliseconds is not None:
                server_delay = milliseconds / 1000
        else:
            retry_after = response.get_header(RETRY_AFTER_HEADER)
            seconds = _parse_int32(retry_after) if retry_after is not None else None
            if seconds is not None:
                server_delay = float(seconds)

        return float(max(server_delay, polling_interval))


def _parse_int32(value: str) -> Optional[int]:
    """Parses a signed 32-bit decimal integer, or returns None"""
    if not _INTEGER.match(value):
        return None
    number = int(value)
    if not _INT32_MIN <= number <= _INT32_MAX:
        return None
    return number
