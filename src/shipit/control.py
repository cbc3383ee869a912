from __future__ import annotations

import logging
from collections.abc import Sequence

from .app_logging import get_logger, log_with_fields
from .models import (
    ArchStatus,
    BuildKind,
    BuildReport,
    EnqueueOutcome,
    JobRecord,
    Pending,
    PollResult,
    Working,
)
from .notify import NotificationError, Notifier, render_report
from .registry import JobRegistry


class BadSecret(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Bad secret.")


class ControlPlane:
    """
    Enqueue/status for operators and poll/report for workers.

    The registry is the only shared state; every claim goes through its
    atomic ``try_create``.
    """

    def __init__(
        self,
        registry: JobRegistry,
        notifier: Notifier,
        secret: str,
        architectures: Sequence[str],
        logger: logging.Logger | None = None,
    ) -> None:
        if not secret:
            raise ValueError("secret must not be empty")
        self.registry = registry
        self.notifier = notifier
        self.secret = secret
        self.architectures = list(architectures)
        self.logger = logger or get_logger("control")

    def authenticate(self, secret: str | None) -> None:
        if secret is None or secret != self.secret:
            raise BadSecret()

    def enqueue(
        self,
        architectures: Sequence[str],
        kind: BuildKind,
        requester_id: str,
    ) -> list[EnqueueOutcome]:
        """
        Claim a slot per architecture, in the order given.

        Unknown architectures are skipped individually. The first busy
        architecture stops the batch: claims made before it stay in place and
        later architectures are not attempted.
        """
        targets = list(architectures) or list(self.architectures)
        outcomes: list[EnqueueOutcome] = []
        for arch in targets:
            if arch not in self.architectures:
                outcomes.append(EnqueueOutcome(arch, "unknown_architecture"))
                log_with_fields(self.logger, logging.WARNING, "enqueue_unknown_arch", arch=arch)
                continue

            record = JobRecord(requester_id=requester_id, architecture=arch, build_kind=kind)
            if not self.registry.try_create(arch, record):
                outcomes.append(EnqueueOutcome(arch, "already_building"))
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "enqueue_rejected_busy",
                    arch=arch,
                    requester_id=requester_id,
                    skipped=targets[len(outcomes) :],
                )
                return outcomes

            outcomes.append(EnqueueOutcome(arch, "created"))
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_claimed",
                arch=arch,
                kind=kind.describe(),
                requester_id=requester_id,
            )
        return outcomes

    def query_status(self) -> list[ArchStatus]:
        by_arch = {record.architecture: record for record in self.registry.list_all()}
        statuses = [ArchStatus(arch, by_arch.pop(arch, None)) for arch in self.architectures]
        statuses.extend(ArchStatus(arch, by_arch[arch]) for arch in sorted(by_arch))
        return statuses

    def poll_for_work(self, arch: str, secret: str | None) -> PollResult:
        self.authenticate(secret)
        record = self.registry.get(arch)
        if record is None:
            return Pending()
        return Working(record)

    def report_done(self, report: BuildReport, secret: str | None) -> None:
        self.authenticate(secret)
        existed = self.registry.clear(report.architecture)
        log_with_fields(
            self.logger,
            logging.INFO if existed else logging.WARNING,
            "job_reported" if existed else "report_without_claim",
            arch=report.architecture,
            requester_id=report.requester_id,
            success=report.success,
            push_success=report.push_success,
            log_url=report.log_url,
        )
        try:
            self.notifier.notify(report.requester_id, render_report(report))
        except NotificationError as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "notification_failed",
                arch=report.architecture,
                requester_id=report.requester_id,
                error=str(exc),
            )

    def clear(self, arch: str) -> bool:
        existed = self.registry.clear(arch)
        log_with_fields(self.logger, logging.WARNING, "slot_cleared_manually", arch=arch, existed=existed)
        return existed
