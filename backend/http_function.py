"""
HTTP Function Executor — outbound calls made by function nodes.

Builds the request from the node config with {{variables}} substituted
into the URL, header values and body, bounds the whole exchange by the
node's timeout, and maps dot-paths of the JSON response into variables.
A timeout, transport error or non-2xx status yields ``success=False``
and no variables; nothing raises past this module.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import FunctionsConfig, get_settings
from models.schemas import FunctionConfig, FunctionResult
from utils.conditions import get_nested_value
from utils.templating import substitute

logger = structlog.get_logger()

RAW_RESPONSE_VAR = "_http_response"
BODYLESS_METHODS = {"GET", "HEAD", "DELETE"}


class HTTPFunctionExecutor:
    """
    Executes the HTTP mode of a function node.

    ``transport`` lets tests (or an egress proxy) replace the network layer.
    """

    def __init__(self, config: FunctionsConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().functions
        self._transport = transport

    async def execute(
        self,
        function: FunctionConfig,
        variables: dict[str, Any],
        timeout: Optional[float] = None,
    ) -> FunctionResult:
        """Run the request and return mapped variables. ``timeout`` is in seconds."""
        timeout = timeout or self.config.http_timeout_seconds
        url = substitute(function.url, variables)
        method = function.method or "GET"

        if not url:
            logger.error("http_function_missing_url")
            return FunctionResult(success=False, error="missing url")

        headers = {key: substitute(value, variables) for key, value in function.headers.items()}
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"

        body = None
        if function.body is not None and method not in BODYLESS_METHODS:
            body = substitute(function.body, variables)

        logger.info("http_function_request", method=method, url=url, timeout=timeout)

        try:
            response = await asyncio.wait_for(
                self._send(method, url, headers, body, timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.error("http_function_timeout", method=method, url=url, timeout=timeout)
            return FunctionResult(success=False, error="timeout")
        except Exception as e:
            logger.error("http_function_failed", method=method, url=url, error=str(e))
            return FunctionResult(success=False, error=str(e))

        status = response.status_code
        logger.info("http_function_response", url=url, status=status)

        if not response.is_success:
            return FunctionResult(success=False, status_code=status, error=f"HTTP {status}")

        data = self._parse_body(response)

        mapped: dict[str, Any] = {}
        for mapping in function.response_mapping:
            # Missing paths are stored as None so `not exists` conditions see them
            mapped[mapping.variable] = get_nested_value(data, mapping.path)
        mapped[RAW_RESPONSE_VAR] = data

        return FunctionResult(success=True, status_code=status, variables=mapped)

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Optional[str],
        timeout: float,
    ) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(1 + max(0, self.config.http_retries)),
                wait=wait_exponential(multiplier=0.1, max=1),
                retry=retry_if_exception_type(httpx.ConnectError),
                reraise=True,
            ):
                with attempt:
                    return await client.request(method, url, headers=headers, content=body)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                logger.warning("http_function_invalid_json", url=str(response.request.url))
        return response.text
