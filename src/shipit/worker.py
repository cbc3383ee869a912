from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path

from .app_logging import get_logger, log_with_fields
from .buildlog import BuildLog
from .client import ControlPlaneClient, ControlPlaneError
from .config import AppConfig, UploadConfig
from .control import BadSecret
from .executor import BuildExecutor, BuildOutcome, default_executors
from .models import BuildReport, JobRecord, Pending
from .remote import Transfer
from .upload import RetryPolicy, RetryUploader
from .utils import detect_arch, host_name, result_file_name, utc_now_iso


class WorkerAgent:
    """
    Polls for the job assigned to one architecture, builds it and reports back.

    ``run_forever`` never returns: every failure is logged and the loop
    resumes after ``poll_interval`` seconds.
    """

    def __init__(
        self,
        arch: str,
        host: str,
        client: ControlPlaneClient,
        executors: Mapping[str, BuildExecutor],
        uploader: RetryUploader,
        upload_config: UploadConfig,
        work_dir: Path,
        *,
        poll_interval: float = 0.3,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        log_factory: Callable[[], BuildLog] = BuildLog,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.arch = arch
        self.host = host
        self.client = client
        self.executors = dict(executors)
        self.uploader = uploader
        self.upload_config = upload_config
        self.work_dir = work_dir
        self.poll_interval = poll_interval
        self.logger = logger or get_logger("worker")
        self.sleep = sleep
        self.log_factory = log_factory
        self.clock = clock

    def run_forever(self) -> None:
        log_with_fields(self.logger, logging.INFO, "worker_started", arch=self.arch, host=self.host)
        while True:
            try:
                self.run_once()
            except Exception as exc:
                self.logger.exception("worker_iteration_failed", extra={"extra_fields": {"error": str(exc)}})
            self.sleep(self.poll_interval)

    def run_once(self) -> bool:
        """One Idle -> Idle pass. Returns True when a job was built and reported."""
        try:
            result = self.client.poll(self.arch)
        except (ControlPlaneError, BadSecret) as exc:
            log_with_fields(self.logger, logging.WARNING, "poll_failed", arch=self.arch, error=str(exc))
            return False
        if isinstance(result, Pending):
            return False

        record = result.record
        log_with_fields(
            self.logger,
            logging.INFO,
            "build_started",
            arch=self.arch,
            kind=record.build_kind.describe(),
            requester_id=record.requester_id,
        )
        log = self.log_factory()
        outcome = self.execute(record, log)
        self.report(record, outcome, log)
        return True

    def execute(self, record: JobRecord, log: BuildLog) -> BuildOutcome:
        executor = self.executors.get(record.build_kind.name)
        if executor is None:
            log.note(f"no executor configured for {record.build_kind.name}")
            return BuildOutcome(success=False)
        try:
            outcome = executor.execute(record, log)
        except OSError as exc:
            log.note(f"build aborted: {exc}")
            outcome = BuildOutcome(success=False)
        log_with_fields(
            self.logger,
            logging.INFO if outcome.success else logging.WARNING,
            "build_finished",
            arch=self.arch,
            success=outcome.success,
            artifacts=[str(path) for path in outcome.artifacts],
        )
        return outcome

    def push_artifacts(self, artifacts: list[Path], log: BuildLog) -> bool:
        destination = self.upload_config.remote(self.upload_config.artifact_dir)
        pushed = True
        for artifact in artifacts:
            if not artifact.exists():
                log.note(f"artifact missing, not pushed: {artifact}")
                log_with_fields(self.logger, logging.WARNING, "artifact_missing", path=str(artifact))
                pushed = False
                continue
            if not self.uploader.upload(artifact, destination, log):
                pushed = False
        return pushed

    def report(self, record: JobRecord, outcome: BuildOutcome, log: BuildLog) -> None:
        push_success = self.push_artifacts(outcome.artifacts, log)

        file_name = result_file_name(self.arch, self.host, self.clock())
        try:
            log_path = log.write(self.work_dir / "logs" / file_name)
        except OSError as exc:
            # the slot stays claimed until cleared by hand
            log_with_fields(self.logger, logging.ERROR, "log_persist_failed", file=file_name, error=str(exc))
            return

        log_url = self.publish_log(log_path)
        report = BuildReport(
            requester_id=record.requester_id,
            architecture=record.architecture,
            build_kind=record.build_kind,
            success=outcome.success,
            push_success=push_success,
            log_url=log_url,
            date=utc_now_iso(),
        )
        try:
            self.client.report(report)
        except (ControlPlaneError, BadSecret) as exc:
            log_with_fields(self.logger, logging.ERROR, "report_failed", arch=self.arch, error=str(exc))
            return
        log_with_fields(
            self.logger,
            logging.INFO,
            "build_reported",
            arch=self.arch,
            success=outcome.success,
            push_success=push_success,
            log_url=log_url,
        )

    def publish_log(self, log_path: Path) -> str | None:
        destination = self.upload_config.remote(self.upload_config.log_dir)
        if self.uploader.upload(log_path, destination):
            log_path.unlink(missing_ok=True)
            return f"{self.upload_config.log_url_base}/{log_path.name}"

        try:
            kept = _copy_non_destructive(log_path, self.upload_config.fallback_dir)
        except OSError as exc:
            log_with_fields(self.logger, logging.ERROR, "log_fallback_failed", file=str(log_path), error=str(exc))
            return None
        log_with_fields(self.logger, logging.WARNING, "log_kept_locally", file=str(kept))
        return None


def _copy_non_destructive(src: Path, dst_dir: Path) -> Path:
    dst_dir.mkdir(parents=True, exist_ok=True)
    destination = dst_dir / src.name
    index = 1
    while destination.exists():
        destination = dst_dir / f"{src.stem}.{index}{src.suffix}"
        index += 1
    shutil.copy2(src, destination)
    return destination


def build_worker(config: AppConfig) -> WorkerAgent:
    arch = config.worker.arch or detect_arch()
    if not arch:
        raise ValueError("cannot detect the architecture of this host; set `worker.arch`")
    policy = RetryPolicy(
        max_attempts=config.retry.attempts,
        base_delay=config.retry.base_delay_seconds,
    )
    return WorkerAgent(
        arch=arch,
        host=config.worker.host_name or host_name(),
        client=ControlPlaneClient(
            config.worker.server_uri,
            config.secret,
            timeout=config.worker.request_timeout_seconds,
        ),
        executors=default_executors(config.worker.work_dir),
        uploader=RetryUploader(Transfer(config.upload), policy),
        upload_config=config.upload,
        work_dir=config.worker.work_dir,
        poll_interval=config.worker.poll_interval_ms / 1000,
    )
