#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Shared helpers for Vidrich strategies.

Circuit breaker for page sources, backoff policies and the retry loop used by
the API and LLM strategies, an in-process LRU store, a timing context manager,
provider key handling and YouTube video id extraction.
"""

import asyncio
import functools
import os
import random
import re
import time
from base64 import b64decode, b64encode, urlsafe_b64encode
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import config
from exceptions import CircuitOpenError, TimeoutExceededError, TransientError
from logging_config import StructuredLogger

logger = StructuredLogger(__name__)

BackoffPolicy = Callable[[int], float]


# --- Circuit Breaker ---

class CircuitBreaker:
    """Stops calling a page source after a run of consecutive failures.

    closed: calls pass; `failure_threshold` failures in a row open the breaker.
    open: calls fail fast with CircuitOpenError for `reset_timeout` seconds.
    half-open: up to `half_open_max_requests` trial calls run at once; that many
    successes close the breaker, any failure reopens it and restarts the timer.

    Errors in `success_exceptions` still reach the caller, but count as a
    healthy answer from the source (a removed video is not an outage).
    """

    STATE_CLOSED = "closed"
    STATE_OPEN = "open"
    STATE_HALF_OPEN = "half-open"

    def __init__(self, name: str, failure_threshold: int = config.CIRCUIT_BREAKER_THRESHOLD,
                 reset_timeout: float = config.CIRCUIT_BREAKER_RESET_TIMEOUT,
                 half_open_max_requests: int = config.CIRCUIT_HALF_OPEN_REQUESTS,
                 success_exceptions: Tuple[type, ...] = (),
                 clock: Callable[[], float] = time.monotonic):
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be greater than 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.trial_limit = max(1, half_open_max_requests)
        self.success_exceptions = success_exceptions
        self._clock = clock
        self._lock = asyncio.Lock()

        self._state = self.STATE_CLOSED
        self._consecutive_failures = 0
        self._open_until = 0.0
        self._trials_running = 0
        self._trial_successes = 0
        self._rejected = 0

    @property
    def state(self) -> str:
        return self._state

    def _trip(self, reason: str) -> None:
        self._state = self.STATE_OPEN
        self._open_until = self._clock() + self.reset_timeout
        self._trials_running = 0
        logger.warning(
            f"Circuit '{self.name}' open for {self.reset_timeout}s: {reason}",
            breaker_name=self.name,
            failures=self._consecutive_failures
        )

    def _close(self) -> None:
        self._state = self.STATE_CLOSED
        self._consecutive_failures = 0
        self._trials_running = 0
        self._trial_successes = 0

    async def __call__(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Await `func(*args, **kwargs)` if the breaker admits the call.

        Raises:
            CircuitOpenError: While open, or when every half-open trial slot is taken.
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.success_exceptions:
            await self._on_success()
            raise
        except Exception as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == self.STATE_OPEN and self._clock() >= self._open_until:
                self._state = self.STATE_HALF_OPEN
                self._trial_successes = 0
                logger.info(f"Circuit '{self.name}' half-open, allowing trial calls", breaker_name=self.name)

            if self._state == self.STATE_CLOSED:
                return
            if self._state == self.STATE_HALF_OPEN and self._trials_running < self.trial_limit:
                self._trials_running += 1
                return

            self._rejected += 1
            detail = "is open" if self._state == self.STATE_OPEN else "has a trial call in flight"
            raise CircuitOpenError(f"Circuit '{self.name}' {detail}")

    async def _on_failure(self, error: Exception) -> None:
        async with self._lock:
            if self._state == self.STATE_HALF_OPEN:
                self._trip(f"trial call failed ({type(error).__name__})")
                return
            if self._state != self.STATE_CLOSED:
                return
            self._consecutive_failures += 1
            logger.debug(
                f"Circuit '{self.name}' failure {self._consecutive_failures}/{self.failure_threshold}",
                breaker_name=self.name,
                error=str(error)
            )
            if self._consecutive_failures >= self.failure_threshold:
                self._trip(f"{self._consecutive_failures} consecutive failures")

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state != self.STATE_HALF_OPEN:
                self._consecutive_failures = 0
                return
            self._trials_running = max(0, self._trials_running - 1)
            self._trial_successes += 1
            if self._trial_successes >= self.trial_limit:
                self._close()
                logger.info(f"Circuit '{self.name}' closed after successful trials", breaker_name=self.name)

    async def reset(self) -> None:
        """Close the breaker by hand."""
        async with self._lock:
            self._close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state,
            "failures": self._consecutive_failures,
            "threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout,
            "rejected_calls": self._rejected,
            "trials_in_flight": self._trials_running if self._state == self.STATE_HALF_OPEN else 0,
            "trial_limit": self.trial_limit,
        }


# --- Backoff Policies ---

def exponential_backoff(base_delay_ms: float = config.RETRY_BASE_DELAY_MS,
                        max_delay_ms: float = config.RETRY_MAX_DELAY_MS) -> BackoffPolicy:
    """Build a backoff policy: retry n waits min(base * 2**(n-1), max) milliseconds.

    The returned function takes the 1-based retry number and returns seconds.
    """
    def policy(attempt: int) -> float:
        delay_ms = min(base_delay_ms * (2 ** max(0, attempt - 1)), max_delay_ms)
        return delay_ms / 1000.0
    return policy


def with_jitter(policy: BackoffPolicy, jitter_factor: float = 0.5) -> BackoffPolicy:
    """Wrap a backoff policy so each delay is scaled by 1 +/- jitter_factor."""
    def jittered(attempt: int) -> float:
        jitter = (random.random() * 2 - 1) * jitter_factor
        return max(0.0, policy(attempt) * (1 + jitter))
    return jittered


def no_backoff(attempt: int) -> float:
    """Backoff policy that never waits."""
    return 0.0


# --- Retry Logic ---

class RetryableRequest:
    """Runs one provider call under a retry policy."""

    @staticmethod
    async def execute_with_retry(
        func: Callable[..., Any],
        *args: Any,
        max_retries: int = config.RETRY_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        timeout_seconds: Optional[float] = config.CALL_TIMEOUT_SECONDS,
        retry_on_exceptions: Tuple[type, ...] = (TransientError,),
        operation_name: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        **kwargs: Any
    ) -> Any:
        """Call `func(*args, **kwargs)` up to `max_retries + 1` times.

        Sync callables run in the default executor. Each attempt is bounded by
        `timeout_seconds`; an expired attempt counts as TimeoutExceededError.
        Errors outside `retry_on_exceptions` propagate on the spot, and the
        last retryable error propagates once attempts run out.

        Args:
            backoff: Maps the 1-based retry number to a wait in seconds
                (default: exponential_backoff()).
            sleep: Awaitable used for the wait, replaced in tests.
            on_retry: Called as (retry_number, error, delay) before each wait,
                e.g. to charge quota for the failed attempt.
        """
        op_name = operation_name or getattr(func, '__name__', 'call')
        backoff = backoff or exponential_backoff()
        attempts = max(0, max_retries) + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            if asyncio.iscoroutinefunction(func):
                call = func(*args, **kwargs)
            else:
                call = asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args, **kwargs))
            try:
                if timeout_seconds is None:
                    return await call
                return await asyncio.wait_for(call, timeout=timeout_seconds)
            except asyncio.TimeoutError:
                last_error = TimeoutExceededError(
                    f"'{op_name}' exceeded {timeout_seconds}s on attempt {attempt}"
                )
                if not isinstance(last_error, retry_on_exceptions):
                    raise last_error
            except retry_on_exceptions as e:
                last_error = e

            logger.warning(
                f"'{op_name}' attempt {attempt}/{attempts} failed: {type(last_error).__name__}",
                operation=op_name,
                attempt=attempt,
                error=str(last_error)
            )
            if attempt == attempts:
                break
            delay = backoff(attempt)
            if on_retry:
                on_retry(attempt, last_error, delay)
            logger.debug(f"'{op_name}' retry {attempt} in {delay:.2f}s", operation=op_name, delay_seconds=delay)
            await sleep(delay)

        raise last_error


# --- Performance Timer ---

@contextmanager
def performance_timer(operation_name: str, threshold_ms: float = 100.0):
    """Log how long the block took: DEBUG under `threshold_ms`, INFO above it,
    WARNING beyond ten times the threshold."""
    started = time.monotonic()
    try:
        yield
    finally:
        elapsed_ms = round((time.monotonic() - started) * 1000, 2)
        if elapsed_ms > threshold_ms * 10:
            log = logger.warning
        elif elapsed_ms > threshold_ms:
            log = logger.info
        else:
            log = logger.debug
        log(f"'{operation_name}' took {elapsed_ms}ms", operation=operation_name,
            duration_ms=elapsed_ms, threshold_ms=threshold_ms)


# --- LRU Cache ---

class LRUCache:
    """Bounded in-process store with recency eviction and optional expiry.

    Each slot holds `(value, expires_at)`; `expires_at` is None for entries
    that never expire. When the store is full, the oldest `eviction_percent`
    of slots are dropped in one pass. All operations take an asyncio.Lock.
    """

    def __init__(self, maxsize: int = 128, ttl_seconds: Optional[float] = None,
                 eviction_percent: int = config.CACHE_EVICTION_PERCENT,
                 clock: Callable[[], float] = time.monotonic):
        if maxsize <= 0:
            raise ValueError("LRUCache maxsize must be greater than 0")
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        percent = max(1, min(int(eviction_percent), 100))
        self._evict_batch = max(1, maxsize * percent // 100)
        self._clock = clock
        self._slots: "OrderedDict[Any, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    def _live_slot(self, key: Any) -> Optional[Tuple[Any, Optional[float]]]:
        """Slot for `key`, dropping it first if expired. Caller holds the lock."""
        slot = self._slots.get(key)
        if slot is None:
            return None
        expires_at = slot[1]
        if expires_at is not None and self._clock() >= expires_at:
            del self._slots[key]
            self._expired += 1
            return None
        return slot

    async def get(self, key: Any) -> Optional[Any]:
        """Value for `key`, or None when absent or expired."""
        async with self._lock:
            slot = self._live_slot(key)
            if slot is None:
                self._misses += 1
                return None
            self._slots.move_to_end(key)
            self._hits += 1
            return slot[0]

    async def put(self, key: Any, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store `value`; `ttl_seconds` overrides the cache-wide default."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        expires_at = None if ttl is None else self._clock() + ttl
        async with self._lock:
            if key in self._slots:
                self._slots.move_to_end(key)
            elif len(self._slots) >= self.maxsize:
                for _ in range(min(self._evict_batch, len(self._slots))):
                    self._slots.popitem(last=False)
                    self._evictions += 1
            self._slots[key] = (value, expires_at)

    async def remove(self, key: Any) -> bool:
        async with self._lock:
            return self._slots.pop(key, None) is not None

    async def clear(self) -> int:
        """Drop every slot; returns how many were held."""
        async with self._lock:
            dropped = len(self._slots)
            self._slots.clear()
            return dropped

    async def size(self) -> int:
        async with self._lock:
            return len(self._slots)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            lookups = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_expirations": self._expired,
                "size": len(self._slots),
                "maxsize": self.maxsize,
                "ttl_enabled": self.ttl_seconds is not None,
                "hit_ratio": self._hits / lookups if lookups else 0.0,
            }


# --- Provider API Keys ---

class SecureApiKeyManager:
    """Resolves the API key for one provider (YouTube Data API or the LLM gateway).

    The key comes from `key_env_var`. When both a password and a salt are set
    in the environment, a Fernet cipher is derived from them (PBKDF2-SHA256)
    and `encrypted_key` is decrypted with it; a key that fails to decrypt
    falls back to the plain environment value.
    """

    KEY_PATTERN = re.compile(r'^[A-Za-z0-9_\-]+$')
    KDF_ITERATIONS = 100000

    def __init__(self, provider: str = "youtube", encrypted_key: Optional[str] = None,
                 key_env_var: str = config.API_KEY_ENV_VAR,
                 key_salt_env_var: str = config.API_KEY_SALT_ENV_VAR,
                 key_password_env_var: str = config.API_KEY_PASSWORD_ENV_VAR,
                 length_range: Tuple[int, int] = (30, 50)):
        self.provider = provider
        self.encrypted_key_input = encrypted_key
        self.key_env_var = key_env_var
        self.length_range = length_range
        self._resolved: Optional[str] = None
        self._fernet = self._derive_cipher(
            os.environ.get(key_password_env_var, ""), os.environ.get(key_salt_env_var, "")
        )

    def _derive_cipher(self, password: str, salt: str) -> Optional[Fernet]:
        if not (password and salt):
            logger.debug(f"{self.provider}: no key password/salt, key is read as plain text")
            return None
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(config.DEFAULT_ENCODING),
            iterations=self.KDF_ITERATIONS,
        )
        secret = kdf.derive(password.encode(config.DEFAULT_ENCODING))
        logger.info(f"{self.provider}: key encryption enabled")
        return Fernet(urlsafe_b64encode(secret))

    @property
    def encryption_available(self) -> bool:
        return self._fernet is not None

    def get_key(self) -> str:
        """The provider key, resolved once; empty string when nothing is configured."""
        if self._resolved is None:
            self._resolved = self._resolve()
            if not self._resolved:
                logger.warning(f"{self.provider}: API key is not configured", env_var=self.key_env_var)
        return self._resolved

    def _resolve(self) -> str:
        plain = os.environ.get(self.key_env_var, "")
        if not (self.encrypted_key_input and self._fernet):
            return plain
        try:
            key = self.decrypt_key(self.encrypted_key_input)
        except (InvalidToken, ValueError) as e:
            logger.error(f"{self.provider}: encrypted key rejected ({type(e).__name__}), using {self.key_env_var}",
                         exc_info=False)
            return plain
        logger.info(f"{self.provider}: encrypted key loaded")
        return key

    def encrypt_key(self, key: str) -> Optional[str]:
        """Base64 Fernet token for `key`, or None without a cipher."""
        if self._fernet is None or not key:
            return None
        token = self._fernet.encrypt(key.encode(config.DEFAULT_ENCODING))
        return b64encode(token).decode(config.DEFAULT_ENCODING)

    def decrypt_key(self, encrypted_b64: str) -> str:
        """Inverse of encrypt_key.

        Raises:
            ValueError: No cipher, or empty input.
            cryptography.fernet.InvalidToken: Token from another password/salt.
        """
        if self._fernet is None:
            raise ValueError(f"{self.provider}: key encryption is not configured")
        if not encrypted_b64:
            raise ValueError(f"{self.provider}: empty encrypted key")
        return self._fernet.decrypt(b64decode(encrypted_b64)).decode(config.DEFAULT_ENCODING)

    def validate_key(self, key_to_validate: Optional[str] = None) -> bool:
        """False only for a missing key; unusual length or characters are logged."""
        key = self.get_key() if key_to_validate is None else key_to_validate
        if not key:
            logger.error(f"{self.provider}: API key is missing", exc_info=False)
            return False
        low, high = self.length_range
        if not low <= len(key) <= high:
            logger.warning(f"{self.provider}: API key length {len(key)} outside {low}-{high}")
        if not self.KEY_PATTERN.match(key):
            logger.warning(f"{self.provider}: API key has unexpected characters")
        return True

    def obfuscate_key(self, key_to_obfuscate: Optional[str] = None) -> str:
        """Loggable form of the key: first four and last three characters."""
        key = self.get_key() if key_to_obfuscate is None else key_to_obfuscate
        if not key:
            return "[MISSING]"
        if len(key) <= 7:
            return key[0] + "..." + "*" * (len(key) - 1)
        return f"{key[:4]}...{key[-3:]}"


# --- Video Identifiers ---

VIDEO_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{11}$")
VIDEO_URL_PATTERNS = (
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v=(?P<identifier>[a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.)?youtu\.be/(?P<identifier>[a-zA-Z0-9_-]{11})"),
    re.compile(r"(?:https?://)?(?:www\.|m\.)?youtube\.com/(?:embed|v|shorts|live)/(?P<identifier>[a-zA-Z0-9_-]{11})"),
)


@functools.lru_cache(maxsize=1024)
def extract_video_id(url_or_id: str) -> Optional[str]:
    """Extract the 11-character video id from a YouTube URL or bare id."""
    if not url_or_id:
        return None
    candidate = url_or_id.strip()
    if VIDEO_ID_PATTERN.match(candidate):
        return candidate
    for pattern in VIDEO_URL_PATTERNS:
        match = pattern.search(candidate)
        if match:
            return match.group("identifier")
    logger.debug(f"Could not extract video id from: {candidate[:80]}")
    return None
