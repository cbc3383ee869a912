from __future__ import annotations

from datetime import datetime
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from shipit.buildlog import BuildLog
from shipit.client import ControlPlaneError
from shipit.config import AppConfig, UploadConfig, WorkerConfig
from shipit.control import BadSecret
from shipit.executor import BuildOutcome
from shipit.models import BuildReport, JobRecord, Livekit, Pending, Release, Working
from shipit.worker import WorkerAgent, build_worker

STAMP = datetime(2024, 1, 2, 3, 4, 5)
LOG_NAME = "shipit-amd64-builder-2024-01-02-03:04:05.txt"


class FakeClient:
    def __init__(self, results: list) -> None:
        self.results = list(results)
        self.reports: list[BuildReport] = []
        self.report_error: Exception | None = None

    def poll(self, arch: str):
        result = self.results.pop(0) if self.results else Pending()
        if isinstance(result, Exception):
            raise result
        return result

    def report(self, report: BuildReport) -> None:
        if self.report_error is not None:
            raise self.report_error
        self.reports.append(report)


class FakeExecutor:
    def __init__(self, outcome: BuildOutcome | Exception) -> None:
        self.outcome = outcome
        self.records: list[JobRecord] = []

    def execute(self, record: JobRecord, log: BuildLog) -> BuildOutcome:
        self.records.append(record)
        log.note(f"building {record.build_kind.describe()}")
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeUploader:
    def __init__(self, fail_destinations: tuple[str, ...] = ()) -> None:
        self.fail_destinations = fail_destinations
        self.uploads: list[tuple[Path, str]] = []

    def upload(self, source: Path, destination: str, log: BuildLog | None = None) -> bool:
        self.uploads.append((source, destination))
        return not destination.endswith(self.fail_destinations) if self.fail_destinations else True


class StopLoop(Exception):
    pass


class WorkerAgentTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.upload_config = UploadConfig(
            host="repo.example",
            log_dir="/buildit/logs",
            artifact_dir="/lookaside",
            log_url_base="https://logs.example",
            fallback_dir=self.root / "push_failed_logs",
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def make_agent(self, client, executors, uploader, **kwargs) -> WorkerAgent:
        return WorkerAgent(
            arch="amd64",
            host="builder",
            client=client,
            executors=executors,
            uploader=uploader,
            upload_config=self.upload_config,
            work_dir=self.root,
            clock=lambda: STAMP,
            **kwargs,
        )

    def test_pending_does_nothing(self) -> None:
        client = FakeClient([Pending()])
        executor = FakeExecutor(BuildOutcome(success=True))
        agent = self.make_agent(client, {"livekit": executor}, FakeUploader())
        self.assertFalse(agent.run_once())
        self.assertEqual(executor.records, [])
        self.assertEqual(client.reports, [])

    def test_poll_failures_are_logged(self) -> None:
        for error in (ControlPlaneError("refused"), BadSecret()):
            agent = self.make_agent(FakeClient([error]), {}, FakeUploader())
            with self.assertLogs("shipit.worker", level="WARNING") as captured:
                self.assertFalse(agent.run_once())
            self.assertTrue(any("poll_failed" in line for line in captured.output))

    def test_successful_build_reports_log_url(self) -> None:
        image = self.root / "aosc-livekit.iso"
        image.write_bytes(b"iso")
        record = JobRecord("42", "amd64", Livekit())
        client = FakeClient([Working(record)])
        uploader = FakeUploader()
        agent = self.make_agent(client, {"livekit": FakeExecutor(BuildOutcome(True, [image]))}, uploader)

        self.assertTrue(agent.run_once())

        self.assertEqual(
            uploader.uploads,
            [
                (image, "maintainers@repo.example:/lookaside"),
                (self.root / "logs" / LOG_NAME, "maintainers@repo.example:/buildit/logs"),
            ],
        )
        self.assertEqual(len(client.reports), 1)
        report = client.reports[0]
        self.assertEqual(report.requester_id, "42")
        self.assertEqual(report.architecture, "amd64")
        self.assertTrue(report.success)
        self.assertTrue(report.push_success)
        self.assertEqual(report.log_url, f"https://logs.example/{LOG_NAME}")
        self.assertFalse((self.root / "logs" / LOG_NAME).exists())

    def test_failed_log_upload_keeps_copy(self) -> None:
        record = JobRecord("42", "amd64", Release(("base",)))
        client = FakeClient([Working(record)])
        uploader = FakeUploader(fail_destinations=("/buildit/logs",))
        agent = self.make_agent(client, {"release": FakeExecutor(BuildOutcome(False))}, uploader)

        with self.assertLogs("shipit.worker", level="WARNING") as captured:
            agent.run_once()

        report = client.reports[0]
        self.assertIsNone(report.log_url)
        self.assertFalse(report.success)
        self.assertTrue(report.push_success)
        kept = self.upload_config.fallback_dir / LOG_NAME
        self.assertIn("building release (base)", kept.read_text(encoding="utf-8"))
        self.assertTrue(any("log_kept_locally" in line for line in captured.output))
        self.assertNotIn("log_url", report.to_dict())

    def test_fallback_never_overwrites(self) -> None:
        fallback = self.upload_config.fallback_dir
        fallback.mkdir(parents=True)
        (fallback / LOG_NAME).write_text("earlier", encoding="utf-8")
        record = JobRecord("42", "amd64", Livekit())
        agent = self.make_agent(
            FakeClient([Working(record)]),
            {"livekit": FakeExecutor(BuildOutcome(True))},
            FakeUploader(fail_destinations=("/buildit/logs",)),
        )

        agent.run_once()

        self.assertEqual((fallback / LOG_NAME).read_text(encoding="utf-8"), "earlier")
        self.assertTrue((fallback / "shipit-amd64-builder-2024-01-02-03:04:05.1.txt").exists())

    def test_missing_artifact_is_failed_push(self) -> None:
        record = JobRecord("42", "amd64", Release(("base",)))
        client = FakeClient([Working(record)])
        uploader = FakeUploader()
        outcome = BuildOutcome(False, [self.root / "aoscbootstrap" / "os-amd64"])
        agent = self.make_agent(client, {"release": FakeExecutor(outcome)}, uploader)

        agent.run_once()

        self.assertFalse(client.reports[0].push_success)
        self.assertEqual([destination for _, destination in uploader.uploads], ["maintainers@repo.example:/buildit/logs"])

    def test_failed_artifact_push(self) -> None:
        image = self.root / "aosc-livekit.iso"
        image.write_bytes(b"iso")
        client = FakeClient([Working(JobRecord("42", "amd64", Livekit()))])
        uploader = FakeUploader(fail_destinations=("/lookaside",))
        agent = self.make_agent(client, {"livekit": FakeExecutor(BuildOutcome(True, [image]))}, uploader)

        agent.run_once()

        report = client.reports[0]
        self.assertTrue(report.success)
        self.assertFalse(report.push_success)
        self.assertIsNotNone(report.log_url)

    def test_missing_executor_reports_failure(self) -> None:
        client = FakeClient([Working(JobRecord("42", "amd64", Livekit()))])
        agent = self.make_agent(client, {}, FakeUploader())
        self.assertTrue(agent.run_once())
        self.assertFalse(client.reports[0].success)

    def test_executor_os_error_reports_failure(self) -> None:
        client = FakeClient([Working(JobRecord("42", "amd64", Livekit()))])
        executor = FakeExecutor(PermissionError("work dir not writable"))
        agent = self.make_agent(client, {"livekit": executor}, FakeUploader())

        agent.run_once()

        self.assertFalse(client.reports[0].success)

    def test_report_failure_is_not_retried(self) -> None:
        client = FakeClient([Working(JobRecord("42", "amd64", Livekit()))])
        client.report_error = ControlPlaneError("report failed: HTTP 500")
        agent = self.make_agent(client, {"livekit": FakeExecutor(BuildOutcome(True))}, FakeUploader())

        with self.assertLogs("shipit.worker", level="ERROR") as captured:
            self.assertTrue(agent.run_once())

        self.assertTrue(any("report_failed" in line for line in captured.output))
        self.assertEqual(client.reports, [])

    def test_run_forever_survives_errors(self) -> None:
        class ExplodingClient(FakeClient):
            def poll(self, arch: str):
                raise RuntimeError("unexpected")

        sleeps: list[float] = []

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                raise StopLoop()

        agent = self.make_agent(ExplodingClient([]), {}, FakeUploader(), sleep=sleep, poll_interval=0.3)
        with self.assertLogs("shipit.worker", level="ERROR"):
            with self.assertRaises(StopLoop):
                agent.run_forever()
        self.assertEqual(sleeps, [0.3, 0.3, 0.3])


class BuildWorkerTest(unittest.TestCase):
    def test_uses_configured_arch_and_host(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config = AppConfig(
                secret="token",
                worker=WorkerConfig(
                    server_uri="http://control:8000",
                    arch="riscv64",
                    host_name="builder-1",
                    work_dir=Path(temp_dir),
                    poll_interval_ms=500,
                ),
            )
            agent = build_worker(config)
            self.assertEqual(agent.arch, "riscv64")
            self.assertEqual(agent.host, "builder-1")
            self.assertEqual(agent.poll_interval, 0.5)
            self.assertEqual(agent.client.server_uri, "http://control:8000")
            self.assertEqual(sorted(agent.executors), ["livekit", "release"])


if __name__ == "__main__":
    unittest.main()
