from __future__ import annotations

import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .buildlog import BuildLog
from .models import JobRecord, Release

MKLIVE_REPO = "https://github.com/AOSC-Dev/aosc-mklive"
BOOTSTRAP_REPO = "https://github.com/AOSC-Dev/aoscbootstrap"

IMAGE_SUFFIXES = {".iso", ".sha256sum"}
MKLIVE_WORK_DIRS = ("livekit", "iso", "to-squash", "memtest", "sb")


@dataclass(slots=True)
class BuildOutcome:
    success: bool
    artifacts: list[Path] = field(default_factory=list)


class BuildExecutor(Protocol):
    def execute(self, record: JobRecord, log: BuildLog) -> BuildOutcome: ...


def sync_checkout(repo_url: str, checkout: Path, log: BuildLog) -> None:
    if not checkout.is_dir():
        log.run(["git", "clone", repo_url, checkout.name], cwd=checkout.parent)
    log.run(["git", "pull"], cwd=checkout)


def remove_paths(paths: Iterable[Path], log: BuildLog) -> None:
    for path in paths:
        if not path.exists():
            continue
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as exc:
            log.note(f"failed to remove {path}: {exc}")
            continue
        log.note(f"removed {path}")


def _images(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.iterdir() if path.is_file() and path.suffix in IMAGE_SUFFIXES)


class LivekitExecutor:
    def __init__(self, work_dir: Path, repo_url: str = MKLIVE_REPO) -> None:
        self.work_dir = work_dir
        self.repo_url = repo_url

    @property
    def checkout(self) -> Path:
        return self.work_dir / "aosc-mklive"

    def execute(self, record: JobRecord, log: BuildLog) -> BuildOutcome:
        sync_checkout(self.repo_url, self.checkout, log)
        stale = _images(self.checkout) + [self.checkout / name for name in MKLIVE_WORK_DIRS]
        remove_paths(stale, log)

        process = log.run(["bash", "./aosc-mklive.sh"], cwd=self.checkout)
        return BuildOutcome(success=process.returncode == 0, artifacts=_images(self.checkout))


class ReleaseExecutor:
    def __init__(self, work_dir: Path, repo_url: str = BOOTSTRAP_REPO) -> None:
        self.work_dir = work_dir
        self.repo_url = repo_url

    @property
    def checkout(self) -> Path:
        return self.work_dir / "aoscbootstrap"

    def execute(self, record: JobRecord, log: BuildLog) -> BuildOutcome:
        kind = record.build_kind
        if not isinstance(kind, Release):
            raise TypeError(f"release executor cannot build {kind.name}")

        sync_checkout(self.repo_url, self.checkout, log)
        os_dir = self.checkout / f"os-{record.architecture}"
        remove_paths([os_dir], log)

        process = log.run(["bash", "./contrib/generate-releases.sh", *kind.variants], cwd=self.checkout)
        # pushed regardless of build status
        return BuildOutcome(success=process.returncode == 0, artifacts=[os_dir])


def default_executors(work_dir: Path) -> dict[str, BuildExecutor]:
    return {
        "livekit": LivekitExecutor(work_dir),
        "release": ReleaseExecutor(work_dir),
    }
