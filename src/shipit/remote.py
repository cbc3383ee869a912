from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from .buildlog import BuildLog
from .config import UploadConfig


class Transfer:
    """Builds and runs scp/rsync commands that push local paths to the upload host."""

    def __init__(self, upload_config: UploadConfig) -> None:
        self.upload_config = upload_config
        self.ssh_options = shlex.split(upload_config.ssh_options)
        if upload_config.ssh_key is not None:
            self.ssh_options = ["-i", str(upload_config.ssh_key), *self.ssh_options]

    def command(self, source: Path, destination: str) -> list[str]:
        if self.upload_config.transfer_mode == "rsync":
            rsh = "ssh " + " ".join(shlex.quote(item) for item in self.ssh_options)
            return ["rsync", "-az", "-e", rsh, str(source), destination]
        cmd = ["scp", *self.ssh_options]
        if source.is_dir():
            cmd.append("-r")
        return [*cmd, str(source), destination]

    def copy(self, source: Path, destination: str, log: BuildLog) -> subprocess.CompletedProcess[bytes]:
        source = source.resolve()
        return log.run(self.command(source, destination), cwd=source.parent)
