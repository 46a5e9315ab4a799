import asyncio
from typing import AsyncGenerator, Tuple

import aiohttp
import pytest
import pytest_asyncio
import requests
from long_running_operation.cancellation import CancellationToken
from long_running_operation.diagnostics import ClientDiagnostics
from long_running_operation.exceptions import RequestFailedError
from long_running_operation.http_operation import HttpStatusOperation
from long_running_operation.long_running_operation import OperationDriver
from long_running_operation.models import HttpResponse
from operation_server import OperationServer

STATUS_URL_TEMPLATE = "http://localhost:{}/operations/op-1"


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[Tuple[OperationServer, int], None]:
    """Start and yield a test OperationServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = OperationServer(completion_time=0.3)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


def make_driver(port: int) -> OperationDriver:
    operation = HttpStatusOperation(STATUS_URL_TEMPLATE.format(port))
    return OperationDriver(
        ClientDiagnostics(),
        operation,
        HttpResponse(status=202, reason="Accepted"),
        scope_attributes={"operation-id": "op-1"},
    )


@pytest.mark.asyncio
async def test_successful_completion(server):
    server_instance, port = server
    driver = make_driver(port)

    response = await driver.wait_for_completion(polling_interval=0.1)

    assert response.json_body()["status"] == "Succeeded"
    assert driver.has_completed
    assert driver.raw_response is response
    assert server_instance.request_count > 1


@pytest.mark.asyncio
async def test_failed_operation_raises_synthesized_error(server):
    server_instance, port = server
    server_instance.failure_rate = 1.0
    driver = make_driver(port)

    with pytest.raises(RequestFailedError) as exc_info:
        await driver.wait_for_completion(polling_interval=0.1)

    assert exc_info.value.error_code == "OperationFailed"
    assert exc_info.value.status == 200
    assert driver.has_completed
    assert driver.failure is exc_info.value


@pytest.mark.asyncio
async def test_canceled_operation_raises_given_cause(server):
    server_instance, port = server
    server_instance.completion_time = 0.0
    server_instance.final_status = "Canceled"
    driver = make_driver(port)

    with pytest.raises(RequestFailedError) as exc_info:
        await driver.update_status()

    assert exc_info.value.error_code == "OperationCanceled"
    assert driver.has_completed


@pytest.mark.asyncio
async def test_http_error_propagates_and_keeps_operation_open(server):
    server_instance, port = server
    server_instance.error_status = 503
    driver = make_driver(port)
    initial = driver.raw_response

    with pytest.raises(aiohttp.ClientResponseError):
        await driver.update_status()

    assert not driver.has_completed
    assert driver.raw_response is initial

    server_instance.error_status = None
    server_instance.completion_time = 0.0
    await driver.update_status()
    assert driver.has_completed


@pytest.mark.asyncio
async def test_retry_after_header_reaches_delay(server):
    server_instance, port = server
    server_instance.completion_time = 30.0
    server_instance.retry_after = {"retry-after-ms": "2500"}
    driver = make_driver(port)

    response = await driver.update_status()

    assert not driver.has_completed
    assert response.get_header("retry-after-ms") == "2500"
    assert OperationDriver.get_server_delay(response, 1.0) == 2.5


@pytest.mark.asyncio
async def test_shared_session_is_used(server):
    _, port = server
    async with aiohttp.ClientSession() as session:
        operation = HttpStatusOperation(STATUS_URL_TEMPLATE.format(port), session=session)
        driver = OperationDriver(
            ClientDiagnostics(), operation, HttpResponse(status=202, reason="Accepted")
        )

        response = await driver.wait_for_completion(polling_interval=0.1)

    assert response.status == 200
    assert driver.has_completed


@pytest.mark.asyncio
async def test_blocking_mode_polls_with_requests(server):
    server_instance, port = server
    driver = make_driver(port)

    response = await asyncio.to_thread(driver.wait_for_completion_sync, 0.1)

    assert response.json_body()["status"] == "Succeeded"
    assert driver.has_completed


@pytest.mark.asyncio
async def test_blocking_mode_http_error(server):
    server_instance, port = server
    server_instance.error_status = 500
    driver = make_driver(port)

    with pytest.raises(requests.HTTPError):
        await asyncio.to_thread(driver.update_status_sync)

    assert not driver.has_completed


@pytest.mark.asyncio
async def test_multiple_operations_polled_simultaneously(server):
    _, port = server
    drivers = [make_driver(port) for _ in range(3)]

    results = await asyncio.gather(
        *[driver.wait_for_completion(polling_interval=0.1) for driver in drivers]
    )

    assert all(result.status == 200 for result in results)
    assert all(driver.has_completed for driver in drivers)


@pytest.mark.asyncio
async def test_cancelling_stops_an_in_flight_request(server):
    server_instance, port = server
    server_instance.response_delay = 1.0
    driver = make_driver(port)
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.1, token.cancel)
    start = loop.time()

    with pytest.raises(asyncio.CancelledError):
        await driver.update_status(token)

    assert loop.time() - start < 0.9
    assert not driver.has_completed
    assert driver.raw_response.status == 202


@pytest.mark.asyncio
async def test_blocking_mode_honours_cancellation_after_request(server):
    server_instance, port = server
    server_instance.response_delay = 0.5
    server_instance.completion_time = 0.0
    driver = make_driver(port)
    token = CancellationToken()

    def check_status():
        try:
            return driver.update_status_sync(token)
        except asyncio.CancelledError as e:
            return e

    asyncio.get_running_loop().call_later(0.1, token.cancel)
    outcome = await asyncio.to_thread(check_status)

    assert isinstance(outcome, asyncio.CancelledError)
    assert not driver.has_completed
