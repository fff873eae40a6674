"""
Reliability Utilities.

Circuit breaker guarding calls to the accounting system.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type

from plan_ledger.app.core.config import settings
from plan_ledger.app.core.exceptions import AccountingTransientError

logger = logging.getLogger("plan_ledger.reliability")


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' counted failures occur, the circuit opens and
    rejects calls for 'reset_timeout' seconds, then lets one call through.

    Only exceptions in 'counted_exceptions' trip the breaker.
    """
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: int = 60,
        counted_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.counted_exceptions = counted_exceptions
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError(f"Circuit '{self.name}' is OPEN")

        try:
            result = await func(*args, **kwargs)
        except self.counted_exceptions:
            self.record_failure()
            raise

        if self.state == "HALF_OPEN":
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning(
                    "Circuit opened",
                    extra={"circuit": self.name, "failures": self.failures}
                )
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


def build_accounting_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        name="accounting",
        failure_threshold=settings.accounting_failure_threshold,
        reset_timeout=settings.accounting_reset_timeout,
        counted_exceptions=(AccountingTransientError,),
    )
