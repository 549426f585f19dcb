"""Domain Guardrails - Circuit Breaker for Import Phases.

This module provides guardrails that keep a badly malformed archive from
flooding a job with per-record errors. The CircuitBreaker watches the failures
of one import phase and opens once they exceed a percentage of the phase's
record count.

Security Impact:
    - Stops processing of low-quality or corrupted archive sections early
    - Reduces log and job-error noise from repeated failures
    - Provides a configurable threshold per phase

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Works with Result type from ports to monitor success/failure
    - Thread-safe design
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Optional

from fhir_timeline.domain.ports import Result

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """Configuration for CircuitBreaker behavior.

    Attributes:
        failure_threshold_percent: Failures, as a percentage of the phase's
            record count, that must be exceeded for the circuit to open (0-100)
        abort_on_open: If True, raise CircuitBreakerOpenError when the circuit opens.
                      If False, only log and let the caller poll ``is_open()``
    """
    failure_threshold_percent: float = 10.0
    abort_on_open: bool = True


class CircuitBreakerOpenError(Exception):
    """Raised when the CircuitBreaker opens due to excessive failures.

    Attributes:
        failure_rate: Failures as a percentage of the phase record count
        threshold: The configured threshold that was exceeded
        records_processed: Number of records seen when the circuit opened
        failures: Number of failures when the circuit opened
    """

    def __init__(
        self,
        message: str,
        failure_rate: float,
        threshold: float,
        records_processed: int,
        failures: int
    ):
        super().__init__(message)
        self.failure_rate = failure_rate
        self.threshold = threshold
        self.records_processed = records_processed
        self.failures = failures


class CircuitBreaker:
    """Circuit Breaker for monitoring the failure rate of one import phase.

    Unlike a sliding-window breaker, the rate is measured against the total
    number of records in the phase, known up front. With the default 10%
    threshold and 100 posts, the circuit opens on the 11th failure no matter
    where in the phase the failures occur.

    Example Usage:
        ```python
        breaker = CircuitBreaker(CircuitBreakerConfig(), total_records=len(posts))

        for post in posts:
            result = process(post)
            try:
                breaker.record_result(result)
            except CircuitBreakerOpenError:
                break
        ```
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, total_records: int = 0):
        """Initialize CircuitBreaker.

        Parameters:
            config: CircuitBreaker configuration (uses defaults if None)
            total_records: Number of records in the monitored phase
        """
        self.config = config or CircuitBreakerConfig()
        self.total_records = max(total_records, 0)
        self._lock = Lock()
        self._is_open = False
        self._total_processed = 0
        self._total_failures = 0

    def record_result(self, result: Result[Any]) -> None:
        """Record a per-record result and open the circuit if needed.

        Parameters:
            result: Outcome of processing one record

        Raises:
            CircuitBreakerOpenError: If abort_on_open=True and the threshold is exceeded
        """
        with self._lock:
            self._total_processed += 1
            if result.is_failure():
                self._total_failures += 1
                self._check_threshold()

    def _check_threshold(self) -> None:
        if self._is_open or self.total_records == 0:
            return

        failure_rate = (self._total_failures / self.total_records) * 100.0
        if failure_rate <= self.config.failure_threshold_percent:
            return

        self._is_open = True
        logger.error(
            f"CircuitBreaker OPEN: {self._total_failures} failures out of "
            f"{self.total_records} records ({failure_rate:.1f}%) exceed threshold "
            f"{self.config.failure_threshold_percent}% "
            f"(processed so far: {self._total_processed})"
        )

        if self.config.abort_on_open:
            raise CircuitBreakerOpenError(
                f"CircuitBreaker opened: {self._total_failures} of {self.total_records} records failed "
                f"({failure_rate:.1f}%), exceeding threshold {self.config.failure_threshold_percent}%",
                failure_rate=failure_rate,
                threshold=self.config.failure_threshold_percent,
                records_processed=self._total_processed,
                failures=self._total_failures
            )

    def is_open(self) -> bool:
        """Check if circuit breaker is currently open.

        Returns:
            bool: True if circuit is open (threshold exceeded), False otherwise
        """
        with self._lock:
            return self._is_open

    def reset(self, total_records: Optional[int] = None) -> None:
        """Reset the breaker, optionally for a phase of a different size."""
        with self._lock:
            if total_records is not None:
                self.total_records = max(total_records, 0)
            self._is_open = False
            self._total_processed = 0
            self._total_failures = 0
            logger.info("CircuitBreaker reset")

    def get_statistics(self) -> dict:
        """Get current statistics about the circuit breaker.

        Returns:
            dict: Statistics including:
                - is_open: Whether circuit is currently open
                - total_records: Size of the monitored phase
                - total_processed: Records recorded so far
                - total_failures: Failures recorded so far
                - failure_rate: Failures as a percentage of total_records
                - threshold: Configured threshold percentage
        """
        with self._lock:
            failure_rate = (
                self._total_failures / self.total_records * 100.0
                if self.total_records > 0 else 0.0
            )
            return {
                'is_open': self._is_open,
                'total_records': self.total_records,
                'total_processed': self._total_processed,
                'total_failures': self._total_failures,
                'failure_rate': failure_rate,
                'threshold': self.config.failure_threshold_percent,
            }
