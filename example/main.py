import asyncio

from long_running_operation.diagnostics import ClientDiagnostics
from long_running_operation.exceptions import RequestFailedError
from long_running_operation.http_operation import HttpStatusOperation
from long_running_operation.long_running_operation import OperationDriver
from long_running_operation.models import HttpResponse, PollingConfig
from operation_server import OperationServer


async def main():
    PORT = 8000
    server = OperationServer(
        completion_time=10.0, failure_rate=0.1, retry_after={"Retry-After": "2"}
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    operation = HttpStatusOperation(f"http://localhost:{PORT}/operations/translate-42")
    driver = OperationDriver(
        ClientDiagnostics(namespace="Example.Operations"),
        operation,
        HttpResponse(status=202, reason="Accepted"),
        operation_type_name="TranslateOperation",
        scope_attributes={"operation-id": "translate-42"},
        config=PollingConfig(default_polling_interval=1.0),
    )

    try:
        response = await driver.wait_for_completion()
        print(f"Final status: {response.json_body()['status']}")
    except RequestFailedError as e:
        print(f"Operation failed: {e.error_code}")
    except Exception as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
