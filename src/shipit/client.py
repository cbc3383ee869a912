from __future__ import annotations

import requests

from .control import BadSecret
from .models import BuildReport, PollResult, decode_poll_result

USER_AGENT = "shipit_worker"


class ControlPlaneError(RuntimeError):
    pass


class ControlPlaneClient:
    def __init__(
        self,
        server_uri: str,
        secret: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.server_uri = server_uri.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "secret": secret})

    def _check(self, response: requests.Response, context: str) -> None:
        if response.status_code == 401:
            raise BadSecret()
        if response.status_code >= 400:
            raise ControlPlaneError(f"{context} failed: HTTP {response.status_code} {response.text.strip()}")

    def poll(self, arch: str) -> PollResult:
        try:
            response = self.session.get(
                f"{self.server_uri}/workerisstarted",
                params={"arch": arch},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ControlPlaneError(f"poll failed: {exc}") from exc
        self._check(response, "poll")
        try:
            return decode_poll_result(response.json())
        except ValueError as exc:
            raise ControlPlaneError(f"poll returned an unexpected body: {exc}") from exc

    def report(self, report: BuildReport) -> None:
        try:
            response = self.session.post(
                f"{self.server_uri}/done",
                json=report.to_dict(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ControlPlaneError(f"report failed: {exc}") from exc
        self._check(response, "report")
