from logging import Logger
from typing import Dict, Optional
import logging

import aiohttp

from core.types import ExecutionRequest, ExecutionResult, Order


class ExecutionError(Exception):
    """Raised when the swap service rejects or cannot process a request"""
    pass


class SwapServiceExecutor:
    """Hands triggered orders to an external swap service over HTTP.

    The service signs, sends and confirms the sell; it answers with a JSON
    body carrying ``success`` and either ``signature`` or ``error``.
    """

    def __init__(self,
                 service_url: str,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout_seconds: float = 30.0,
                 headers: Optional[Dict[str, str]] = None,
                 logger: Optional[Logger] = None):
        if not service_url:
            raise ValueError("service_url is required")
        self.service_url = service_url
        self.session = session
        self._owns_session = session is None
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.logger = logger or logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    async def execute(self, order: Order) -> ExecutionResult:
        request = ExecutionRequest.from_order(order)
        try:
            body = await self._post(request)
        except (aiohttp.ClientError, ExecutionError) as e:
            self.logger.error(f"Swap request for order {request.order_id} failed: {str(e)}")
            return ExecutionResult(success=False, error=str(e))

        if body.get("success"):
            return ExecutionResult(success=True, execution_ref=body.get("signature") or body.get("txId"))
        return ExecutionResult(success=False, error=body.get("error") or "swap service reported failure")

    async def _post(self, request: ExecutionRequest) -> Dict:
        session = await self._get_session()
        async with session.post(self.service_url, json=request.as_dict(), headers=self.headers) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None

            if response.status >= 400:
                detail = body.get("error") if isinstance(body, dict) else None
                raise ExecutionError(f"Swap service returned {response.status}: {detail or response.reason}")
            if not isinstance(body, dict):
                raise ExecutionError("Swap service returned a non-JSON body")
            return body
