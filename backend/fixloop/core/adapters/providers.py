"""
Fix Providers and Analyzers
===========================

Capability interfaces for the collaborators that find issues and propose
patches, plus an HTTP provider and a backoff wrapper.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

import httpx

from fixloop.core.config import settings
from fixloop.core.errors import ProviderError

if TYPE_CHECKING:
    from fixloop.core.engine.domain import Issue, IssueDraft

logger = logging.getLogger(__name__)


# ==========================================================================
# Request / response
# ==========================================================================

@dataclass
class FixContext:
    """What the provider knows about earlier attempts on the same issue."""
    previous_attempts: list[dict[str, Any]] = field(default_factory=list)
    last_verification_error: Optional[str] = None
    diagnostic_feedback: Optional[str] = None
    related_files: dict[str, str] = field(default_factory=dict)


@dataclass
class FixRequest:
    issue: "Issue"
    file_content: str
    context: FixContext = field(default_factory=FixContext)

    def to_payload(self) -> dict[str, Any]:
        issue = self.issue
        return {
            "issue": {
                "id": issue.id,
                "type": issue.type,
                "category": issue.category.value,
                "severity": issue.severity.value,
                "message": issue.message,
                "file_path": issue.file_path,
                "line": issue.line,
                "column": issue.column,
                "end_line": issue.end_line,
                "end_column": issue.end_column,
                "rule": issue.rule,
                "code_snippet": issue.code_snippet,
                "suggested_fix": issue.suggested_fix,
            },
            "file_content": self.file_content,
            "context": asdict(self.context),
        }


@dataclass
class FixResponse:
    success: bool
    diff: Optional[str] = None
    explanation: Optional[str] = None
    tokens_used: int = 0
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "FixResponse":
        return cls(
            success=bool(data.get("success", False)),
            diff=data.get("diff") or None,
            explanation=data.get("explanation"),
            tokens_used=int(data.get("tokens_used") or 0),
            error=data.get("error"),
        )


# ==========================================================================
# Interfaces
# ==========================================================================

class FixProvider(ABC):
    """Anything that can propose a unified diff for one issue."""

    name: str = "provider"

    @abstractmethod
    async def fix(self, request: FixRequest) -> FixResponse:
        """
        Propose a fix.

        Returns a response with ``success=False`` to decline. Raises
        ``ProviderError`` when the call itself fails.
        """


class Analyzer(ABC):
    """Anything that can scan a repository and report issues."""

    name: str = "analyzer"

    @abstractmethod
    async def analyze(
        self,
        repository_path: str,
        issue_types: Sequence[str] = (),
        exclude_patterns: Sequence[str] = (),
    ) -> list["IssueDraft"]:
        ...


# ==========================================================================
# HTTP provider
# ==========================================================================

RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class HttpFixProvider(FixProvider):
    """
    Calls a fix service over HTTP.

    POST {base_url}/fix with the request payload, expects a JSON body with
    ``success``, ``diff``, ``explanation``, ``tokens_used`` and ``error``.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.FIX_PROVIDER_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def fix(self, request: FixRequest) -> FixResponse:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/fix",
                json=request.to_payload(),
                headers=self._headers(),
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Fix provider timed out: {e}", retryable=True)
        except httpx.TransportError as e:
            raise ProviderError(f"Fix provider unreachable: {e}", retryable=True)

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise ProviderError(
                f"Fix provider returned {response.status_code}",
                retryable=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"Fix provider rejected request: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Fix provider returned invalid JSON: {e}")
        return FixResponse.from_payload(data)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ==========================================================================
# Backoff wrapper
# ==========================================================================

class RetryingFixProvider(FixProvider):
    """
    Retries retryable ``ProviderError``s with exponential backoff.

    Non-retryable errors and the last retryable one propagate unchanged.
    """

    def __init__(
        self,
        inner: FixProvider,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.inner = inner
        self.name = f"retrying-{inner.name}"
        self.max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self.base_delay = settings.PROVIDER_BACKOFF_SECONDS if base_delay is None else base_delay
        self.max_delay = settings.PROVIDER_BACKOFF_MAX_SECONDS if max_delay is None else max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        # Up to 10% jitter
        return delay + random.uniform(0, delay * 0.1)

    async def fix(self, request: FixRequest) -> FixResponse:
        attempt = 1
        while True:
            try:
                return await self.inner.fix(request)
            except ProviderError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Provider call for issue {request.issue.id} failed ({e}), "
                    f"retry {attempt}/{self.max_attempts - 1} in {delay:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1

    async def close(self) -> None:
        close = getattr(self.inner, "close", None)
        if close is not None:
            await close()
