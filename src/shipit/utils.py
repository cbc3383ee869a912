from __future__ import annotations

import platform
import socket
from datetime import UTC, datetime

# uname machine -> distribution architecture name
MACHINE_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "loongarch64": "loongarch64",
    "ppc64le": "ppc64el",
    "mips64": "loongson3",
    "riscv64": "riscv64",
}

LOG_TIMESTAMP_FORMAT = "%Y-%m-%d-%H:%M:%S"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def detect_arch(machine: str | None = None) -> str | None:
    name = (machine if machine is not None else platform.machine()).strip().lower()
    return MACHINE_ARCH_NAMES.get(name)


def host_name() -> str:
    return socket.gethostname()


def result_file_name(arch: str, host: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.now()).strftime(LOG_TIMESTAMP_FORMAT)
    return f"shipit-{arch}-{host}-{stamp}.txt"


def truncate(text: str, limit: int = 1000, marker: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[: limit - len(marker)] + marker
