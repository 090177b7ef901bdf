"""
============================================================================
Tradegate Risk Engine
Resilient HTTP Client - Hardened Infrastructure Layer
============================================================================

Reliability Level: L5 High
Input Constraints: Valid collaborator base URL
Side Effects: HTTP calls with retry/backoff/circuit breaker

MANDATE:
- Exponential backoff with jitter for transient failures
- Circuit breaker pattern to prevent cascade failures
- Request tracing via X-Correlation-ID
- Zero tolerance for silent failures: every failure returns an error code

HARDENED FEATURES:
- Retry with exponential backoff (3 attempts, 1s base, 2x multiplier)
- Circuit breaker (5 failures = 60s open state)
- Request timeout (30s default)

Shared by the text-generation and ledger relay clients.

============================================================================
"""

import time
import random
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field

import httpx

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 30.0

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_SECONDS = 60

DEFAULT_TIMEOUT_SECONDS = 30.0


# ============================================================================
# ERROR CODES
# ============================================================================

class HttpErrorCode(str, Enum):
    """Transport-level failure codes, reported inside GATE-050 errors."""
    CONNECTION_FAILED = "HTTP-001-CONNECTION_FAILED"
    TIMEOUT = "HTTP-002-TIMEOUT"
    CIRCUIT_OPEN = "HTTP-003-CIRCUIT_OPEN"
    MAX_RETRIES = "HTTP-004-MAX_RETRIES"
    INVALID_RESPONSE = "HTTP-005-INVALID_RESPONSE"


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"      # Normal operation
    OPEN = "OPEN"          # Failing, reject requests
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass
class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests rejected immediately
    - HALF_OPEN: Testing if service recovered (2 successes close it)
    """
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS
    name: str = "collaborator"
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float = field(default=0.0, init=False)
    _success_count: int = field(default=0, init=False)

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN -> HALF_OPEN once the timeout passed."""
        if self._state == CircuitState.OPEN:
            if self.clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info(f"[CIRCUIT-BREAKER] {self.name} transitioning to HALF_OPEN")
        return self._state

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= 2:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                logger.info(f"[CIRCUIT-BREAKER] {self.name} circuit CLOSED (recovered)")
        else:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self.clock()

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(f"[CIRCUIT-BREAKER] {self.name} circuit OPEN (half-open test failed)")
        elif self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                f"[CIRCUIT-BREAKER] {self.name} circuit OPEN "
                f"(failures: {self._failure_count}/{self.failure_threshold})"
            )

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN


# ============================================================================
# RESPONSE WRAPPER
# ============================================================================

@dataclass
class ServiceResponse:
    """Standardized response from a collaborator call."""
    success: bool
    data: Optional[Any] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    latency_ms: float = 0.0
    retries: int = 0
    correlation_id: Optional[str] = None


# ============================================================================
# RESILIENT CLIENT
# ============================================================================

class ResilientHttpClient:
    """
    Synchronous httpx client with retry, backoff and circuit breaker.

    5xx, timeouts and connection errors are retried; 4xx are not.
    """

    def __init__(
        self,
        base_url: str,
        name: str = "collaborator",
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._name = name
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._backoff_multiplier = backoff_multiplier
        self._max_delay = max_delay
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep

        self._circuit = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            name=name,
        )

        logger.info(
            f"[HTTP-CLIENT-INIT] name={name} base_url={self._base_url} "
            f"max_retries={max_retries} timeout={timeout}s "
            f"circuit_threshold={failure_threshold}"
        )

    @property
    def circuit(self) -> CircuitBreaker:
        return self._circuit

    def _calculate_delay(self, attempt: int) -> float:
        delay = self._base_delay * (self._backoff_multiplier ** attempt)
        delay = min(delay, self._max_delay)
        # Add jitter (0-25% of delay)
        jitter = delay * random.uniform(0, 0.25)
        return delay + jitter

    def request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> ServiceResponse:
        """
        Call the collaborator with retry, backoff and circuit breaker.

        Returns:
            ServiceResponse; never raises for transport failures
        """
        if not self._circuit.allow_request():
            logger.warning(
                f"[{HttpErrorCode.CIRCUIT_OPEN.value}] "
                f"Circuit open, rejecting request to {self._name}{path}"
            )
            return ServiceResponse(
                success=False,
                error_code=HttpErrorCode.CIRCUIT_OPEN.value,
                error_message="Circuit breaker open - service unavailable",
                correlation_id=correlation_id,
            )

        url = f"{self._base_url}{path}"
        start_time = time.time()
        last_error = None

        for attempt in range(self._max_retries):
            try:
                with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                    response = client.request(
                        method,
                        url,
                        json=payload,
                        headers={
                            **self._headers,
                            "X-Correlation-ID": correlation_id or "",
                            "X-Attempt": str(attempt + 1),
                        },
                    )

                latency_ms = (time.time() - start_time) * 1000

                if response.status_code == 200:
                    self._circuit.record_success()
                    try:
                        data = response.json()
                    except ValueError:
                        data = response.text
                    logger.info(
                        f"[HTTP-SUCCESS] {self._name}{path} | "
                        f"correlation_id={correlation_id} | "
                        f"latency={latency_ms:.1f}ms | "
                        f"retries={attempt}"
                    )
                    return ServiceResponse(
                        success=True,
                        data=data,
                        latency_ms=latency_ms,
                        retries=attempt,
                        correlation_id=correlation_id,
                    )

                if response.status_code >= 500:
                    last_error = f"Server error: {response.status_code}"
                    logger.warning(
                        f"[HTTP-RETRY] {self._name}{path} | "
                        f"status={response.status_code} | "
                        f"attempt={attempt + 1}/{self._max_retries}"
                    )
                else:
                    # Client error - don't retry
                    self._circuit.record_failure()
                    return ServiceResponse(
                        success=False,
                        error_code=HttpErrorCode.INVALID_RESPONSE.value,
                        error_message=f"Client error: {response.status_code}",
                        latency_ms=latency_ms,
                        retries=attempt,
                        correlation_id=correlation_id,
                    )

            except httpx.InvalidURL as e:
                # Misconfigured endpoint - retrying cannot help
                self._circuit.record_failure()
                logger.error(
                    f"[{HttpErrorCode.CONNECTION_FAILED.value}] {self._name}{path} | "
                    f"invalid_url={e} | correlation_id={correlation_id}"
                )
                return ServiceResponse(
                    success=False,
                    error_code=HttpErrorCode.CONNECTION_FAILED.value,
                    error_message=f"Invalid URL: {e}",
                    latency_ms=(time.time() - start_time) * 1000,
                    retries=attempt,
                    correlation_id=correlation_id,
                )

            except httpx.TimeoutException:
                last_error = "Request timeout"
                logger.warning(
                    f"[HTTP-TIMEOUT] {self._name}{path} | "
                    f"attempt={attempt + 1}/{self._max_retries}"
                )

            except httpx.HTTPError as e:
                last_error = f"Connection failed: {str(e)[:100]}"
                logger.warning(
                    f"[HTTP-CONNECT-ERROR] {self._name}{path} | "
                    f"attempt={attempt + 1}/{self._max_retries} | "
                    f"error={last_error}"
                )

            if attempt < self._max_retries - 1:
                delay = self._calculate_delay(attempt)
                logger.debug(f"[HTTP-BACKOFF] Waiting {delay:.2f}s before retry")
                self._sleep(delay)

        # All retries exhausted
        self._circuit.record_failure()
        latency_ms = (time.time() - start_time) * 1000

        logger.error(
            f"[{HttpErrorCode.MAX_RETRIES.value}] {self._name}{path} | "
            f"correlation_id={correlation_id} | "
            f"latency={latency_ms:.1f}ms | "
            f"last_error={last_error}"
        )

        return ServiceResponse(
            success=False,
            error_code=HttpErrorCode.MAX_RETRIES.value,
            error_message=f"Max retries exceeded: {last_error}",
            latency_ms=latency_ms,
            retries=self._max_retries,
            correlation_id=correlation_id,
        )


__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "HttpErrorCode",
    "ResilientHttpClient",
    "ServiceResponse",
]
