"""Credential rotation for nightfix.

KeyRotationClient presents one logical "ask the model" operation over a
pool of API keys. Rate-limited keys cool down, rejected keys are retired,
and transient network failures are retried on the same key with
exponential backoff before moving on.

The pool is the only state shared between scheduler workers. Every read
and write of credential status goes through CredentialPool under its lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from nightfix.core.config import CredentialConfig
from nightfix.core.exceptions import (
    AllCredentialsExhausted,
    AuthenticationError,
    LLMCancelledError,
    LLMError,
    RateLimitError,
    TransientLLMError,
)
from nightfix.core.models import CredentialSnapshot, CredentialStatus
from nightfix.llm.client import LLMMessage, LLMResponse, OpenRouterClient, backoff_delay

logger = logging.getLogger("nightfix.llm.rotation")

REQUEST_WINDOW_SECONDS = 60.0


@dataclass
class APICredential:
    """One API key and its health. Mutated only by CredentialPool."""

    key: str
    status: CredentialStatus = CredentialStatus.ACTIVE
    rate_limited_until: float = 0.0
    last_used_at: Optional[datetime] = None
    consecutive_failures: int = 0
    request_times: deque[float] = field(default_factory=deque)

    @property
    def handle(self) -> str:
        return "..." + self.key[-4:] if len(self.key) > 4 else "..."


class CredentialPool:
    """Thread-safe pool of API credentials with round-robin selection."""

    def __init__(
        self,
        keys: list[str],
        cooldown_seconds: float = 60.0,
        exhaustion_threshold: int = 3,
        max_requests_per_minute: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        unique: list[str] = []
        for key in keys:
            if key and key not in unique:
                unique.append(key)
        if not unique:
            raise AllCredentialsExhausted(["credential pool is empty"])

        self._credentials = [APICredential(key=k) for k in unique]
        self._lock = threading.Lock()
        self._last_success = -1
        self._clock = clock
        self.cooldown_seconds = cooldown_seconds
        self.exhaustion_threshold = max(1, exhaustion_threshold)
        self.max_requests_per_minute = max_requests_per_minute

    @classmethod
    def from_config(cls, config: CredentialConfig) -> "CredentialPool":
        return cls(
            keys=config.api_keys,
            cooldown_seconds=config.rate_limit_cooldown_seconds,
            exhaustion_threshold=config.exhaustion_threshold,
            max_requests_per_minute=config.max_requests_per_minute,
        )

    def __len__(self) -> int:
        return len(self._credentials)

    def acquire(self, exclude: Optional[set[int]] = None) -> Optional[tuple[int, str]]:
        """Select the next usable credential after the last successful one.

        Returns (index, key), or None when nothing outside ``exclude`` is usable.
        """
        exclude = exclude or set()
        with self._lock:
            now = self._clock()
            count = len(self._credentials)
            for step in range(1, count + 1):
                index = (self._last_success + step) % count
                if index in exclude:
                    continue
                cred = self._credentials[index]
                if not self._is_usable(cred, now):
                    continue
                cred.request_times.append(now)
                cred.last_used_at = datetime.now(UTC)
                return index, cred.key
            return None

    def note_request(self, index: int) -> None:
        with self._lock:
            cred = self._credentials[index]
            cred.request_times.append(self._clock())
            cred.last_used_at = datetime.now(UTC)

    def record_success(self, index: int) -> None:
        with self._lock:
            cred = self._credentials[index]
            cred.consecutive_failures = 0
            if cred.status == CredentialStatus.RATE_LIMITED:
                cred.status = CredentialStatus.ACTIVE
            self._last_success = index

    def record_failure(self, index: int) -> None:
        with self._lock:
            cred = self._credentials[index]
            cred.consecutive_failures += 1
            if cred.consecutive_failures >= self.exhaustion_threshold:
                cred.status = CredentialStatus.EXHAUSTED
                logger.warning(
                    "Credential %s exhausted after %d consecutive failures",
                    cred.handle,
                    cred.consecutive_failures,
                )

    def mark_rate_limited(self, index: int, retry_after: Optional[float] = None) -> None:
        with self._lock:
            cred = self._credentials[index]
            if cred.status in (CredentialStatus.INVALID, CredentialStatus.EXHAUSTED):
                return
            cooldown = retry_after if retry_after is not None else self.cooldown_seconds
            cred.status = CredentialStatus.RATE_LIMITED
            cred.rate_limited_until = self._clock() + cooldown
            logger.warning("Credential %s rate limited for %.1fs", cred.handle, cooldown)

    def mark_invalid(self, index: int) -> None:
        with self._lock:
            cred = self._credentials[index]
            cred.status = CredentialStatus.INVALID
            logger.error("Credential %s rejected by provider; retired", cred.handle)

    def reset_exhausted(self) -> int:
        """Return EXHAUSTED credentials to service. Returns how many were reset."""
        reset = 0
        with self._lock:
            for cred in self._credentials:
                if cred.status == CredentialStatus.EXHAUSTED:
                    cred.status = CredentialStatus.ACTIVE
                    cred.consecutive_failures = 0
                    reset += 1
        if reset:
            logger.info("Reset %d exhausted credential(s)", reset)
        return reset

    def handle(self, index: int) -> str:
        return self._credentials[index].handle

    def usable_count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for cred in self._credentials if self._is_usable(cred, now))

    def snapshot(self) -> list[CredentialSnapshot]:
        with self._lock:
            now = self._clock()
            wall = datetime.now(UTC)
            snapshots = []
            for cred in self._credentials:
                until = None
                if cred.status == CredentialStatus.RATE_LIMITED:
                    until = wall + timedelta(seconds=max(0.0, cred.rate_limited_until - now))
                snapshots.append(
                    CredentialSnapshot(
                        handle=cred.handle,
                        status=cred.status,
                        rate_limited_until=until,
                        last_used_at=cred.last_used_at,
                        consecutive_failures=cred.consecutive_failures,
                    )
                )
            return snapshots

    def _is_usable(self, cred: APICredential, now: float) -> bool:
        # Caller holds the lock.
        if cred.status in (CredentialStatus.INVALID, CredentialStatus.EXHAUSTED):
            return False
        if cred.status == CredentialStatus.RATE_LIMITED:
            if now < cred.rate_limited_until:
                return False
            cred.status = CredentialStatus.ACTIVE
        if self.max_requests_per_minute > 0:
            cutoff = now - REQUEST_WINDOW_SECONDS
            while cred.request_times and cred.request_times[0] <= cutoff:
                cred.request_times.popleft()
            if len(cred.request_times) >= self.max_requests_per_minute:
                return False
        return True


class KeyRotationClient:
    """One logical completion call over a CredentialPool."""

    def __init__(
        self,
        pool: CredentialPool,
        llm_client: OpenRouterClient,
        transient_retries: int = 2,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.llm_client = llm_client
        self.transient_retries = max(0, transient_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LLMResponse:
        """Ask the model, rotating credentials as they fail.

        timeout_seconds bounds each HTTP request. When cancel_event is given,
        backoff waits on it and no further request is sent once it is set.

        Raises:
            AllCredentialsExhausted: once every credential has been tried or
                is unusable. No request is sent when none is usable up front.
            LLMCancelledError: cancel_event was set before a reply arrived.
        """
        messages = []
        if system:
            messages.append(LLMMessage(role="system", content=system))
        messages.append(LLMMessage(role="user", content=prompt))

        tried: set[int] = set()
        failures: list[str] = []
        while True:
            picked = self.pool.acquire(exclude=tried)
            if picked is None:
                raise AllCredentialsExhausted(failures or ["no usable credential"])
            index, key = picked
            tried.add(index)
            handle = self.pool.handle(index)

            for attempt in range(self.transient_retries + 1):
                _raise_if_cancelled(cancel_event)
                if attempt:
                    self.pool.note_request(index)
                try:
                    response = self.llm_client.complete(
                        messages, api_key=key, model=model, timeout_seconds=timeout_seconds,
                    )
                except RateLimitError as e:
                    self.pool.mark_rate_limited(index, e.retry_after)
                    failures.append(f"{handle}: rate limited")
                    break
                except AuthenticationError:
                    self.pool.mark_invalid(index)
                    failures.append(f"{handle}: authentication failed")
                    break
                except TransientLLMError as e:
                    if attempt < self.transient_retries:
                        delay = backoff_delay(attempt, self.backoff_seconds)
                        logger.warning(
                            "Transient error on %s: %s. Waiting %.1fs before retry %d",
                            handle, e, delay, attempt + 1,
                        )
                        self._pause(delay, cancel_event)
                        continue
                    self.pool.record_failure(index)
                    failures.append(f"{handle}: {e}")
                    break
                except LLMError as e:
                    self.pool.record_failure(index)
                    failures.append(f"{handle}: {e}")
                    break
                else:
                    self.pool.record_success(index)
                    response.credential_handle = handle
                    return response

            logger.info("Rotating away from credential %s", handle)

    def _pause(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(delay)
        elif cancel_event.wait(delay):
            raise LLMCancelledError("Cancelled during backoff")

    def close(self) -> None:
        self.llm_client.close()


def _raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise LLMCancelledError("Cancelled before request")
