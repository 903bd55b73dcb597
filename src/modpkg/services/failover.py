# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Fetch Failover

Single responsibility: Retry with exponential backoff per URL, then fall back to the next URL
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from modpkg.core.config import Config
from modpkg.core.errors import FetchError

logger = logging.getLogger(__name__)

# Errors worth another attempt; anything else propagates immediately
RETRYABLE_ERRORS = (httpx.HTTPError, OSError, asyncio.TimeoutError)


@dataclass
class FetchPolicy:
    """Retry policy applied to each URL before falling back to the next"""
    max_retries: int = 2
    retry_delay: float = 0.5
    max_retry_delay: float = 10.0
    backoff_multiplier: float = 2.0
    timeout: float = 30.0

    @classmethod
    def from_config(cls, config: Config) -> "FetchPolicy":
        return cls(
            max_retries=config.fetch_max_retries,
            retry_delay=config.fetch_retry_delay,
            max_retry_delay=config.fetch_max_retry_delay,
            backoff_multiplier=config.fetch_backoff_multiplier,
            timeout=config.fetch_timeout,
        )


@dataclass
class AttemptLog:
    """Per-URL outcome of a failover run"""
    url: str
    attempts: int = 0
    response_time: Optional[float] = None
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.response_time is not None


class FetchFailover:
    """
    Runs an async operation against an ordered list of URLs.

    Features:
    - Retry with exponential backoff on each URL
    - Ordered fallback to the next URL
    - FetchError once every URL is exhausted
    """

    def __init__(self, policy: Optional[FetchPolicy] = None):
        """
        Initialize failover runner.

        Args:
            policy: Retry policy (defaults to FetchPolicy())
        """
        self.policy = policy or FetchPolicy()
        self.history: Dict[str, AttemptLog] = {}

    async def execute_with_retry(
        self,
        operation: Callable[[str], Awaitable[Any]],
        url: str,
        operation_name: str
    ) -> Any:
        """
        Execute operation with retry logic on a single URL.

        Args:
            operation: Async function taking the URL
            url: URL to use
            operation_name: Operation name for logging

        Returns:
            Operation result

        Raises:
            Exception: The last error if all retries fail
        """
        last_error: Optional[BaseException] = None
        delay = self.policy.retry_delay
        log = self.history.setdefault(url, AttemptLog(url=url))

        for attempt in range(self.policy.max_retries + 1):
            try:
                if attempt > 0:
                    logger.info(
                        f"Retry attempt {attempt}/{self.policy.max_retries} "
                        f"for {operation_name} on {url} after {delay}s"
                    )
                    await asyncio.sleep(delay)

                log.attempts += 1
                start_time = time.monotonic()
                result = await asyncio.wait_for(operation(url), timeout=self.policy.timeout)
                log.response_time = time.monotonic() - start_time

                if attempt > 0:
                    logger.info(f"Retry successful for {operation_name} on {url}")
                return result

            except RETRYABLE_ERRORS as e:
                last_error = e
                error_msg = str(e) or type(e).__name__
                log.errors.append(error_msg)

                if attempt == self.policy.max_retries:
                    logger.warning(f"Final retry failed for {operation_name} on {url}: {error_msg}")
                    break

                logger.warning(
                    f"Retry {attempt + 1}/{self.policy.max_retries} failed "
                    f"for {operation_name} on {url}: {error_msg}"
                )
                # Exponential backoff
                delay = min(delay * self.policy.backoff_multiplier, self.policy.max_retry_delay)

        raise last_error

    async def execute_with_failover(
        self,
        operation: Callable[[str], Awaitable[Any]],
        urls: List[str],
        operation_name: str
    ) -> Any:
        """
        Execute operation against each URL in order until one succeeds.

        Args:
            operation: Async function taking the URL
            urls: URLs in preference order
            operation_name: Package or document being fetched (for errors)

        Returns:
            Result of the first successful URL

        Raises:
            FetchError: If every URL fails
        """
        errors = []
        for url in urls:
            try:
                logger.debug(f"Attempting {operation_name} from {url}")
                return await self.execute_with_retry(operation, url, operation_name)
            except RETRYABLE_ERRORS as e:
                errors.append(f"{url}: {str(e) or type(e).__name__}")
                logger.warning(f"{operation_name} failed on {url}, trying next URL")

        logger.error(f"All URLs failed for {operation_name}. Attempted: {urls}")
        raise FetchError(operation_name, urls, errors, attempts=self.get_summary(urls))

    def get_summary(self, urls: Optional[List[str]] = None) -> Dict[str, Dict[str, Any]]:
        """
        Get per-URL attempt summary.

        Args:
            urls: Limit the summary to these URLs (default: every URL tried)

        Returns:
            Summary dictionary keyed by URL
        """
        return {
            url: {
                "attempts": log.attempts,
                "succeeded": log.succeeded,
                "response_time": round(log.response_time, 3) if log.succeeded else None,
                "recent_errors": log.errors[-3:]
            }
            for url, log in self.history.items()
            if urls is None or url in urls
        }
