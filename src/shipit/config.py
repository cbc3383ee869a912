from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import DEFAULT_ARCHITECTURES
from .registry import GLOB_CHARACTERS

SECRET_ENV = "SHIPIT_SECRET"
TELEGRAM_TOKEN_ENV = "TELOXIDE_TOKEN"

DEFAULT_REGISTRY_URL = "redis://127.0.0.1:6379/0"
DEFAULT_REGISTRY_PREFIX = "shipit:"
DEFAULT_SSH_OPTIONS = "-o BatchMode=yes -o ConnectTimeout=10"
DEFAULT_LOG_DIR = "/buildit/logs"
DEFAULT_ARTIFACT_DIR = "/lookaside/private/aosc-os"
DEFAULT_LOG_URL_BASE = "https://buildit.aosc.io/logs"


@dataclass(slots=True)
class RegistryConfig:
    url: str = DEFAULT_REGISTRY_URL
    prefix: str = DEFAULT_REGISTRY_PREFIX


@dataclass(slots=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    architectures: list[str] = field(default_factory=lambda: list(DEFAULT_ARCHITECTURES))


@dataclass(slots=True)
class NotifyConfig:
    kind: str = "log"
    token: str | None = None


@dataclass(slots=True)
class WorkerConfig:
    server_uri: str = "http://127.0.0.1:8000"
    arch: str | None = None
    host_name: str | None = None
    work_dir: Path = Path(".")
    poll_interval_ms: int = 300
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class UploadConfig:
    host: str = "localhost"
    user: str = "maintainers"
    ssh_key: Path | None = None
    ssh_options: str = DEFAULT_SSH_OPTIONS
    transfer_mode: str = "scp"
    log_dir: str = DEFAULT_LOG_DIR
    artifact_dir: str = DEFAULT_ARTIFACT_DIR
    log_url_base: str = DEFAULT_LOG_URL_BASE
    fallback_dir: Path = Path("push_failed_logs")

    def remote(self, directory: str) -> str:
        return f"{self.user}@{self.host}:{directory}"


@dataclass(slots=True)
class RetryConfig:
    attempts: int = 5
    base_delay_seconds: float = 1.0


@dataclass(slots=True)
class PathsConfig:
    log: Path | None = None


@dataclass(slots=True)
class AppConfig:
    secret: str
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _optional_str(mapping: dict, key: str) -> str | None:
    value = mapping.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    secret = _optional_str(raw, "secret") or os.environ.get(SECRET_ENV, "").strip()
    if not secret:
        raise ValueError(f"Missing `secret` in config (or set {SECRET_ENV})")

    registry_raw = _section(raw, "registry")
    registry = RegistryConfig(
        url=str(registry_raw.get("url", DEFAULT_REGISTRY_URL)),
        prefix=str(registry_raw.get("prefix", DEFAULT_REGISTRY_PREFIX)),
    )
    if GLOB_CHARACTERS.intersection(registry.prefix):
        raise ValueError("`registry.prefix` must not contain glob characters (*, ?, [, ], \\)")
    if registry.url.startswith("sqlite:///"):
        db_path = registry.url[len("sqlite:///") :]
        if db_path != ":memory:" and not Path(db_path).expanduser().is_absolute():
            registry.url = f"sqlite:///{to_path(db_path)}"

    server_raw = _section(raw, "server")
    architectures = server_raw.get("architectures", list(DEFAULT_ARCHITECTURES))
    if not isinstance(architectures, list) or not architectures:
        raise ValueError("`server.architectures` must be a non-empty list")
    server = ServerConfig(
        host=str(server_raw.get("host", "0.0.0.0")),
        port=int(server_raw.get("port", 8000)),
        architectures=[str(item) for item in architectures],
    )
    if len(set(server.architectures)) != len(server.architectures):
        raise ValueError("`server.architectures` must not contain duplicates")

    notify_raw = _section(raw, "notify")
    notify = NotifyConfig(
        kind=str(notify_raw.get("kind", "log")).lower(),
        token=_optional_str(notify_raw, "token") or os.environ.get(TELEGRAM_TOKEN_ENV) or None,
    )
    if notify.kind not in {"log", "telegram"}:
        raise ValueError("`notify.kind` must be either `log` or `telegram`")
    if notify.kind == "telegram" and not notify.token:
        raise ValueError(f"`notify.token` is required for telegram (or set {TELEGRAM_TOKEN_ENV})")

    worker_raw = _section(raw, "worker")
    worker = WorkerConfig(
        server_uri=str(worker_raw.get("server_uri", "http://127.0.0.1:8000")).rstrip("/"),
        arch=_optional_str(worker_raw, "arch"),
        host_name=_optional_str(worker_raw, "host_name"),
        work_dir=to_path(worker_raw.get("work_dir", ".")),
        poll_interval_ms=int(worker_raw.get("poll_interval_ms", 300)),
        request_timeout_seconds=float(worker_raw.get("request_timeout_seconds", 30)),
    )
    if worker.poll_interval_ms < 1:
        raise ValueError("`worker.poll_interval_ms` must be >= 1")

    upload_raw = _section(raw, "upload")
    ssh_key = _optional_str(upload_raw, "ssh_key")
    upload = UploadConfig(
        host=str(upload_raw.get("host", "localhost")),
        user=str(upload_raw.get("user", "maintainers")),
        ssh_key=to_path(ssh_key) if ssh_key else None,
        ssh_options=str(upload_raw.get("ssh_options", DEFAULT_SSH_OPTIONS)),
        transfer_mode=str(upload_raw.get("transfer_mode", "scp")).lower(),
        log_dir=str(upload_raw.get("log_dir", DEFAULT_LOG_DIR)),
        artifact_dir=str(upload_raw.get("artifact_dir", DEFAULT_ARTIFACT_DIR)),
        log_url_base=str(upload_raw.get("log_url_base", DEFAULT_LOG_URL_BASE)).rstrip("/"),
        fallback_dir=to_path(upload_raw.get("fallback_dir", "push_failed_logs")),
    )
    if upload.transfer_mode not in {"scp", "rsync"}:
        raise ValueError("`upload.transfer_mode` must be either `scp` or `rsync`")

    retry_raw = _section(raw, "retry")
    retry = RetryConfig(
        attempts=int(retry_raw.get("attempts", 5)),
        base_delay_seconds=float(retry_raw.get("base_delay_seconds", 1.0)),
    )
    if retry.attempts < 1:
        raise ValueError("`retry.attempts` must be >= 1")
    if retry.base_delay_seconds < 0:
        raise ValueError("`retry.base_delay_seconds` must be >= 0")

    paths_raw = _section(raw, "paths")
    log_path = _optional_str(paths_raw, "log")
    paths = PathsConfig(log=to_path(log_path) if log_path else None)

    return AppConfig(
        secret=secret,
        registry=registry,
        server=server,
        notify=notify,
        worker=worker,
        upload=upload,
        retry=retry,
        paths=paths,
    )


def ensure_worker_paths(config: AppConfig) -> None:
    config.worker.work_dir.mkdir(parents=True, exist_ok=True)
    (config.worker.work_dir / "logs").mkdir(parents=True, exist_ok=True)
    config.upload.fallback_dir.mkdir(parents=True, exist_ok=True)
