"""
REST Client
===========

Thin aiohttp wrapper behind the REST snapshot feeds.

- At most ``max_concurrency`` requests in flight
- Requests spaced at least ``min_interval_ms`` apart
- Total timeout per request

A request is tried once. Any failure raises RestError, the feed reports
``error`` for that cycle and the next scheduler cycle is the retry.

Usage:
    async with RestClient(base_url="https://api.binance.com", name="binance") as client:
        depth = await client.get_json("/api/v3/depth", params={"symbol": "BTCUSDT", "limit": 20})
"""

import asyncio
import logging
from typing import Any, Mapping, Optional

import aiohttp

from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 10


class RestError(Exception):
    """Transport error, timeout or non-2xx response."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RestClient:
    """
    Args:
        base_url: Scheme and host, e.g. "https://api.binance.com"
        name: Label used in logs
        max_concurrency: Requests in flight (default: 4)
        min_interval_ms: Spacing between request starts (default: 50)
        timeout_sec: Total timeout per request
    """

    def __init__(
        self,
        base_url: str,
        name: str,
        max_concurrency: int = 4,
        min_interval_ms: int = 50,
        timeout_sec: float = REQUEST_TIMEOUT_SEC,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.min_interval_ms = min_interval_ms
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

        self._slots = asyncio.Semaphore(max_concurrency)
        self._spacing_lock = asyncio.Lock()
        self._next_start_ms = 0
        self._session: Optional[aiohttp.ClientSession] = None

        self.requests = 0
        self.failures = 0
        # Binance X-MBX-USED-WEIGHT-* headers from the last response
        self.used_weight: dict[str, str] = {}

    async def _spaced_start(self) -> None:
        async with self._spacing_lock:
            delay_ms = self._next_start_ms - now_ms()
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000.0)
            self._next_start_ms = now_ms() + self.min_interval_ms

    def _session_or_new(self) -> aiohttp.ClientSession:
        # Session must be created inside the running loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        GET ``base_url + path`` and decode the JSON body.

        Raises:
            RestError: timeout, connection error or non-2xx status
        """
        url = self.base_url + path
        async with self._slots:
            await self._spaced_start()
            started = now_ms()
            self.requests += 1
            try:
                async with self._session_or_new().get(url, params=params) as response:
                    self.used_weight = {
                        k: v for k, v in response.headers.items() if "USED-WEIGHT" in k.upper()
                    }
                    logger.debug(
                        "rest_request",
                        extra={
                            "rest_name": self.name,
                            "path": path,
                            "status": response.status,
                            "elapsed_ms": now_ms() - started,
                        },
                    )
                    if response.status >= 300 or response.status < 200:
                        raise RestError(f"HTTP {response.status} for {path}", status=response.status)
                    return await response.json()
            except asyncio.TimeoutError as e:
                self.failures += 1
                logger.warning(
                    "rest_request_timeout",
                    extra={"rest_name": self.name, "path": path, "elapsed_ms": now_ms() - started},
                )
                raise RestError(f"timeout for {path}") from e
            except aiohttp.ClientError as e:
                self.failures += 1
                logger.warning(
                    "rest_request_error",
                    extra={"rest_name": self.name, "path": path, "error": str(e), "error_type": type(e).__name__},
                )
                raise RestError(str(e)) from e
            except RestError:
                self.failures += 1
                raise

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info(
                "rest_client_closed",
                extra={"rest_name": self.name, "requests": self.requests, "failures": self.failures},
            )
        self._session = None

    async def __aenter__(self) -> "RestClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
