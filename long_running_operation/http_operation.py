from typing import Optional

import aiohttp
import requests
from loguru import logger
from long_running_operation.cancellation import CancellationToken
from long_running_operation.exceptions import RequestFailedError
from long_running_operation.long_running_operation import Operation
from long_running_operation.models import HttpResponse, OperationState

SUCCEEDED_STATES = frozenset({"succeeded"})
FAILED_STATES = frozenset({"failed"})
CANCELED_STATES = frozenset({"canceled", "cancelled"})


class HttpStatusOperation(Operation):
    """Checks a long-running operation through a JSON status endpoint.

    The endpoint is expected to answer with a body such as
    ``{"status": "Running"}``. Suspending calls go through aiohttp and
    blocking calls through requests.
    """

    def __init__(
        self,
        status_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        status_field: str = "status",
        timeout: float = 30.0,
    ):
        self.status_url = status_url
        self.session = session
        self.status_field = status_field
        self.timeout = timeout
        self.logger = logger

    async def update_state(
        self, async_mode: bool, cancellation_token: CancellationToken
    ) -> OperationState:
        if async_mode:
            response = await self._get_status_async(cancellation_token)
        else:
            response = self._get_status_sync(cancellation_token)

        status = self._read_status(response)

        if status in SUCCEEDED_STATES:
            return OperationState.success(response)
        if status in FAILED_STATES:
            return OperationState.failure(response)
        if status in CANCELED_STATES:
            return OperationState.failure(
                response,
                RequestFailedError(
                    f"Operation at {self.status_url} was canceled",
                    status=response.status,
                    error_code="OperationCanceled",
                    response=response,
                ),
            )
        return OperationState.pending(response)

    async def _get_status_async(self, cancellation_token: CancellationToken) -> HttpResponse:
        cancellation_token.raise_if_cancellation_requested()
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        if self.session is not None:
            return await cancellation_token.run(self._fetch(self.session, timeout))

        async with aiohttp.ClientSession() as session:
            return await cancellation_token.run(self._fetch(session, timeout))

    async def _fetch(
        self, session: aiohttp.ClientSession, timeout: aiohttp.ClientTimeout
    ) -> HttpResponse:
        try:
            async with session.get(self.status_url, timeout=timeout) as response:
                response.raise_for_status()
                content = await response.read()
                return HttpResponse(
                    status=response.status,
                    reason=response.reason or "",
                    headers=dict(response.headers),
                    content=content,
                )
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {self.status_url}: {e.message}")
            raise

    def _get_status_sync(self, cancellation_token: CancellationToken) -> HttpResponse:
        cancellation_token.raise_if_cancellation_requested()
        try:
            response = requests.get(self.status_url, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            self.logger.error(f"HTTP error at {self.status_url}: {e}")
            raise

        # requests cannot be interrupted mid-call
        cancellation_token.raise_if_cancellation_requested()

        return HttpResponse(
            status=response.status_code,
            reason=response.reason or "",
            headers=dict(response.headers),
            content=response.content,
        )

    def _read_status(self, response: HttpResponse) -> str:
        try:
            body = response.json_body()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return ""
        return str(body.get(self.status_field, "")).lower()
