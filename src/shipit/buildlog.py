from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path

LAUNCH_FAILED_RETURNCODE = 127

Runner = Callable[..., "subprocess.CompletedProcess[bytes]"]


class BuildLog:
    """
    In-memory transcript of every command a build runs.

    Each step records when it started, how long it took, its exit status and
    its full stdout/stderr.
    """

    def __init__(self, runner: Runner = subprocess.run) -> None:
        self.runner = runner
        self.lines: list[str] = []

    def note(self, message: str) -> None:
        self.lines.append(f"{datetime.now().isoformat(sep=' ')}: {message}\n")

    def run(self, cmd: Sequence[str], cwd: Path) -> subprocess.CompletedProcess[bytes]:
        rendered = shlex.join(cmd)
        self.note(f"Running `{rendered}` in `{cwd}`")
        begin = time.monotonic()
        try:
            process = self.runner(list(cmd), cwd=str(cwd), capture_output=True, check=False)
        except OSError as exc:
            process = subprocess.CompletedProcess(
                list(cmd),
                LAUNCH_FAILED_RETURNCODE,
                stdout=b"",
                stderr=f"failed to launch: {exc}\n".encode(),
            )
        elapsed = time.monotonic() - begin
        self.note(f"`{rendered}` finished in {elapsed:.3f}s with exit status {process.returncode}")
        self.lines.append("STDOUT:\n")
        self.lines.append(_text(process.stdout))
        self.lines.append("STDERR:\n")
        self.lines.append(_text(process.stderr))
        return process

    def text(self) -> str:
        return "".join(self.lines)

    def write(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.text(), encoding="utf-8")
        return path


def _text(output: bytes | str | None) -> str:
    if not output:
        return ""
    text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
    return text if text.endswith("\n") else text + "\n"
