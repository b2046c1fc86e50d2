from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


# -----------------------
# Error taxonomy
# -----------------------
class AdScaleError(Exception):
    """Base class for every error raised by adscale."""

    code = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(AdScaleError):
    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message, field=field)
        self.field = field
        self.value = value


class ExternalServiceError(AdScaleError):
    code = "external_service_error"

    def __init__(self, message: str, service: str = "meta", status_code: Optional[int] = None,
                 api_error_code: Optional[int] = None) -> None:
        super().__init__(message, service=service, status_code=status_code, api_error_code=api_error_code)
        self.service = service
        self.status_code = status_code
        self.api_error_code = api_error_code


class TransientServiceError(ExternalServiceError):
    """Network failure, 5xx or rate limiting; safe to retry."""

    code = "transient_external_error"


class CircuitOpenError(ExternalServiceError):
    code = "circuit_open"


class NotFoundError(AdScaleError):
    code = "not_found"


class InvalidStateError(AdScaleError):
    code = "invalid_state"


class TokenError(AdScaleError):
    code = "token_error"

    def __init__(self, message: str, account_id: Optional[str] = None) -> None:
        super().__init__(message, account_id=account_id)
        self.account_id = account_id


class TokenExpired(TokenError):
    code = "token_expired"


class NeedsReconnect(TokenError):
    code = "needs_reconnect"


class OperationCancelled(AdScaleError):
    code = "cancelled"


class ConfigurationError(AdScaleError):
    code = "configuration_error"


# -----------------------
# Circuit breaker
# -----------------------
class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: int = 60
    expected_exception: type = TransientServiceError


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = (TransientServiceError,)


class CircuitBreaker:
    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self._lock = threading.Lock()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        with self._lock:
            if self.state == CircuitState.OPEN:
                elapsed = (datetime.now() - self.last_failure_time).total_seconds() if self.last_failure_time else 0.0
                if elapsed >= self.config.timeout_seconds:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info(f"Circuit breaker {self.name} entering HALF_OPEN state")
                else:
                    raise CircuitOpenError(f"Circuit breaker {self.name} is OPEN", service=self.name)
        try:
            result = func(*args, **kwargs)
        except self.config.expected_exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.config.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"Circuit breaker {self.name} CLOSED")
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()
            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit breaker {self.name} back to OPEN")
            elif self.failure_count >= self.config.failure_threshold:
                self.state = CircuitState.OPEN
                logger.error(f"Circuit breaker {self.name} OPENED after {self.failure_count} failures")

    def reset(self) -> None:
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.last_failure_time = None


class CircuitBreakerManager:
    def __init__(self) -> None:
        self.breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        with self._lock:
            if name not in self.breakers:
                self.breakers[name] = CircuitBreaker(name, config)
            return self.breakers[name]

    def reset_all(self) -> None:
        for breaker in list(self.breakers.values()):
            breaker.reset()


circuit_breaker_manager = CircuitBreakerManager()


# -----------------------
# Retry
# -----------------------
class RetryHandler:
    """Runs a callable with exponential backoff.

    The wait between attempts goes through ``cancel.wait`` when a cancellation
    event is supplied, so a cancelled caller stops sleeping immediately.
    """

    def __init__(self, config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep

    def execute(self, func: Callable[..., T], *args, cancel: Optional[threading.Event] = None, **kwargs) -> T:
        last_exception: Optional[BaseException] = None
        for attempt in range(self.config.max_retries + 1):
            if cancel is not None and cancel.is_set():
                raise OperationCancelled("Operation cancelled before attempt")
            try:
                return func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                last_exception = e
                if attempt >= self.config.max_retries:
                    logger.error(f"Max retries ({self.config.max_retries}) exceeded: {e}")
                    break
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Retry attempt {attempt + 1}/{self.config.max_retries} "
                    f"after {delay:.2f}s: {e}"
                )
                if cancel is not None:
                    if cancel.wait(delay):
                        raise OperationCancelled("Operation cancelled during backoff") from e
                else:
                    self._sleep(delay)
        assert last_exception is not None
        raise last_exception

    def _calculate_delay(self, attempt: int) -> float:
        delay = self.config.initial_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)
        if self.config.jitter:
            delay = delay * (0.75 + random.random() * 0.5)
        return delay


def summarize_errors(errors, limit: int = 5) -> str:
    """Render a list of error strings as ``"N error(s): a; b; c ..."``."""
    errors = list(errors)
    if not errors:
        return ""
    sample = "; ".join(str(e) for e in errors[:limit])
    more = " ..." if len(errors) > limit else ""
    return f"{len(errors)} error(s): {sample}{more}"
