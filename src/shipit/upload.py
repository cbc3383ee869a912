from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .app_logging import get_logger, log_with_fields
from .buildlog import BuildLog


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2**attempt)


def call_with_retry(
    action: Callable[[int], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Run ``action(attempt)`` until it returns True or the policy is exhausted.

    Every failed attempt, the last one included, is followed by a sleep of
    ``policy.delay(attempt)``: 1, 2, 4, 8, 16 units with the default policy.
    """
    for attempt in range(policy.max_attempts):
        if action(attempt):
            return True
        sleep(policy.delay(attempt))
    return False


class Transport(Protocol):
    def copy(self, source: Path, destination: str, log: BuildLog): ...


class RetryUploader:
    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.logger = logger or get_logger("upload")

    def upload(self, source: Path, destination: str, log: BuildLog | None = None) -> bool:
        """Deliver ``source``; False means the caller should fall back to local storage."""
        transcript = log if log is not None else BuildLog()

        def attempt(index: int) -> bool:
            if index > 0:
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "upload_retry",
                    source=str(source),
                    destination=destination,
                    attempt=index + 1,
                )
            try:
                process = self.transport.copy(source, destination, transcript)
            except OSError as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "upload_attempt_failed",
                    source=str(source),
                    destination=destination,
                    attempt=index + 1,
                    error=str(exc),
                )
                return False
            if process.returncode == 0:
                return True
            log_with_fields(
                self.logger,
                logging.WARNING,
                "upload_attempt_failed",
                source=str(source),
                destination=destination,
                attempt=index + 1,
                returncode=process.returncode,
            )
            return False

        delivered = call_with_retry(attempt, self.policy, self.sleep)
        if not delivered:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "upload_exhausted",
                source=str(source),
                destination=destination,
                attempts=self.policy.max_attempts,
            )
        return delivered
