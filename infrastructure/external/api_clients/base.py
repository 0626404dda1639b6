"""
内部服务 HTTP 客户端基类

基于 httpx.AsyncClient，瞬时失败（超时、连接错误、429/5xx）使用 tenacity 指数退避重试；
404 映射为 NotFoundError，其余 4xx 与重试耗尽映射为 APIError。
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass
class APIResponse:
    status_code: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    @property
    def request_id(self) -> Optional[str]:
        return self.headers.get("x-request-id")

    def json(self) -> Any:
        return self.data


class APIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[APIResponse] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (status={self.status_code})"
        return self.message


class NotFoundError(APIError):
    pass


class RetryableAPIError(APIError):
    """瞬时错误，仅在重试循环内部使用"""


_RETRY_ON = (httpx.TimeoutException, httpx.NetworkError, RetryableAPIError)


class BaseAPIClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: 服务根地址
            max_retries: 首次请求之外的重试次数
            retry_delay: 退避基数（秒）
            transport: 测试时注入 httpx.MockTransport
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        headers = {"Accept": "application/json", "User-Agent": "payments-service"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def _send(self, method: str, url: str, **kwargs: Any) -> APIResponse:
        started = time.perf_counter()
        resp = await self._client.request(method, url, **kwargs)
        try:
            data = resp.json() if resp.content else None
        except ValueError:
            data = None
        result = APIResponse(
            status_code=resp.status_code,
            data=data,
            headers=dict(resp.headers),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.debug("api_response", method=method, url=url, status_code=resp.status_code, elapsed_ms=result.elapsed_ms)

        if resp.status_code in TRANSIENT_STATUS:
            raise RetryableAPIError(f"transient status {resp.status_code}", resp.status_code, result)
        if resp.status_code == 404:
            raise NotFoundError("resource not found", 404, result)
        if resp.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise APIError(message or f"request failed with status {resp.status_code}", resp.status_code, result)
        return result

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> APIResponse:
        url = self._url(endpoint)
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type(_RETRY_ON),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send(method, url, **kwargs)
        except RetryableAPIError as exc:
            logger.warning("api_retries_exhausted", method=method, url=url, status_code=exc.status_code)
            raise APIError(exc.message, exc.status_code, exc.response) from exc
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("api_transport_error", method=method, url=url, error=str(exc))
            raise APIError(f"transport error: {exc.__class__.__name__}") from exc
        raise APIError("no attempt was made")

    async def get(self, endpoint: str, **kwargs: Any) -> APIResponse:
        return await self._request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs: Any) -> APIResponse:
        return await self._request("POST", endpoint, **kwargs)
