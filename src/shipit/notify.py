from __future__ import annotations

import logging
from typing import Protocol

import requests

from .app_logging import get_logger, log_with_fields
from .models import BuildReport
from .utils import truncate

TELEGRAM_API = "https://api.telegram.org"
MESSAGE_LIMIT = 1000


class NotificationError(RuntimeError):
    pass


class Notifier(Protocol):
    def notify(self, requester_id: str, message: str) -> None: ...


def render_report(report: BuildReport) -> str:
    outcome = "success" if report.success else "has error"
    lines = [f"Build {report.build_kind.describe()} {outcome}: {report.architecture}"]
    lines.append(f"Push: {'ok' if report.push_success else 'failed'}")
    if report.log_url:
        lines.append(f"Log: {report.log_url}")
    else:
        lines.append("Log: upload failed, kept on the worker")
    return "\n".join(lines)


class LogNotifier:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or get_logger("notify")

    def notify(self, requester_id: str, message: str) -> None:
        log_with_fields(self.logger, logging.INFO, "notification", requester_id=requester_id, text=message)


class TelegramNotifier:
    """Sends messages through the Bot API; requester ids are chat ids."""

    def __init__(
        self,
        token: str,
        *,
        session: requests.Session | None = None,
        api_url: str = TELEGRAM_API,
        timeout: float = 10.0,
    ) -> None:
        self.token = token
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def notify(self, requester_id: str, message: str) -> None:
        try:
            response = self.session.post(
                f"{self.api_url}/bot{self.token}/sendMessage",
                json={"chat_id": requester_id, "text": truncate(message, MESSAGE_LIMIT)},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            # the URL embeds the token
            raise NotificationError(f"sendMessage to {requester_id} failed: {type(exc).__name__}") from None
