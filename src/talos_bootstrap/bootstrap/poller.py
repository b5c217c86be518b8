"""Readiness polling for the bootstrap pipeline.

Every wait stage goes through ReadinessPoller.wait_until: a predicate is
evaluated at a fixed interval until it returns True, the retry policy is
exhausted, or a cancellation event is set.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from ..errors import CancelledError, TimeoutError
from ..shared.logging import get_logger

logger = get_logger(__name__)

Predicate = Callable[[], bool]
AttemptCallback = Callable[[int, int, str | None], None]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to evaluate a predicate and how long to wait between."""

    max_attempts: int
    interval_seconds: float
    description: str = ""

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")

    def __str__(self) -> str:
        budget = f"{self.max_attempts} attempts x {self.interval_seconds:g}s"
        return f"{self.description} ({budget})" if self.description else budget


@dataclass
class PollResult:
    """Result of a successful wait."""

    attempts: int
    elapsed_seconds: float = 0.0


class ReadinessPoller:
    """Poll a predicate until it holds."""

    def __init__(self, cancel_event: threading.Event | None = None):
        """Initialize poller.

        Args:
            cancel_event: Event that aborts any wait in progress when set.
        """
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Abort the current and any future wait."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def wait_until(
        self,
        predicate: Predicate,
        policy: RetryPolicy,
        on_attempt: AttemptCallback | None = None,
    ) -> PollResult:
        """Evaluate predicate until it returns True.

        A predicate that raises is treated as "not ready yet"; tools are
        expected to fail while the node or API server is still starting.

        Args:
            predicate: Zero-argument callable returning True when ready.
            policy: Attempt budget and interval.
            on_attempt: Optional callback called with (attempt, max_attempts, error)
                       after every unsuccessful evaluation.

        Returns:
            PollResult with the number of evaluations made.

        Raises:
            TimeoutError: After max_attempts unsuccessful evaluations.
            CancelledError: If the cancel event is set.
        """
        start = datetime.now()
        last_error: str | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if self.cancel_event.is_set():
                raise CancelledError(
                    message=f"Cancelled while waiting for {policy.description or 'condition'}",
                    attempts=attempt - 1,
                )

            try:
                ready = bool(predicate())
                last_error = None
            except Exception as e:
                ready = False
                last_error = str(e) or type(e).__name__

            if ready:
                elapsed = (datetime.now() - start).total_seconds()
                logger.debug(
                    "condition met",
                    policy=policy.description,
                    attempts=attempt,
                    elapsed_seconds=elapsed,
                )
                return PollResult(attempts=attempt, elapsed_seconds=elapsed)

            if on_attempt:
                on_attempt(attempt, policy.max_attempts, last_error)

            # Wait before next attempt (unless this was the last one)
            if attempt < policy.max_attempts:
                if self.cancel_event.wait(policy.interval_seconds):
                    raise CancelledError(
                        message=f"Cancelled while waiting for {policy.description or 'condition'}",
                        attempts=attempt,
                    )

        raise TimeoutError(
            message=f"Condition not met after {policy.max_attempts} attempts: {policy}",
            attempts=policy.max_attempts,
            policy=str(policy),
        )


def raise_if_cancelled(cancel_event: threading.Event | None, activity: str) -> None:
    """Raise CancelledError if cancel_event has been set.

    For long-running steps that are not readiness waits, such as Helm
    installs or ``kubectl wait``, so a signal stops them between tool calls.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledError(message=f"Cancelled during {activity}")
