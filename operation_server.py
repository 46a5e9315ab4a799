import asyncio
import random
from datetime import datetime
from typing import Dict, Optional

from aiohttp import web
from loguru import logger


class OperationServer:
    """Serves the status of a single long-running operation for local testing"""

    def __init__(
        self,
        completion_time: float = 10.0,
        failure_rate: float = 0.0,
        retry_after: Optional[Dict[str, str]] = None,
    ):
        self.start_time = None
        self.completion_time = completion_time
        self.failure_rate = failure_rate
        self.retry_after = retry_after or {}
        self.final_status = "Succeeded"
        self.error_status = None
        self.request_count = 0
        self.response_delay = 0.0
        self.app = web.Application()
        self.app.router.add_get("/operations/{operation_id}", self.handle_status)
        self.runner = None
        self.logger = logger

    async def handle_status(self, request):
        self.request_count += 1
        operation_id = request.match_info["operation_id"]

        if self.start_time is None:
            self.start_time = datetime.now()

        if self.response_delay:
            await asyncio.sleep(self.response_delay)

        if self.error_status is not None:
            self.logger.info(f"Returning HTTP {self.error_status}")
            return web.json_response(
                {"error": {"code": "ServiceUnavailable", "message": "Try again later"}},
                status=self.error_status,
            )

        if random.random() < self.failure_rate:
            self.logger.info("Returning failed status")
            return web.json_response(
                {
                    "id": operation_id,
                    "status": "Failed",
                    "error": {"code": "OperationFailed", "message": "The operation failed"},
                }
            )

        elapsed = (datetime.now() - self.start_time).total_seconds()

        if elapsed >= self.completion_time:
            self.logger.info(f"Returning {self.final_status} status")
            return web.json_response({"id": operation_id, "status": self.final_status})
        else:
            self.logger.info(f"Returning running status (elapsed: {elapsed:.1f}s)")
            return web.json_response(
                {"id": operation_id, "status": "Running"}, headers=self.retry_after
            )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.logger.info("Server stopped")
