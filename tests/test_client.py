from __future__ import annotations

from typing import Any
import unittest

import requests

from shipit.client import ControlPlaneClient, ControlPlaneError
from shipit.control import BadSecret
from shipit.models import BuildReport, JobRecord, Livekit, Pending, Release, Working


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self.payload = payload
        self.text = text

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload


class FakeSession:
    def __init__(self, response: FakeResponse | Exception) -> None:
        self.response = response
        self.headers: dict[str, str] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _respond(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._respond("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._respond("POST", url, **kwargs)


class ControlPlaneClientTest(unittest.TestCase):
    def make_client(self, response: FakeResponse | Exception) -> tuple[ControlPlaneClient, FakeSession]:
        session = FakeSession(response)
        client = ControlPlaneClient("http://shipit.local/", "token", session=session, timeout=5)
        return client, session

    def test_headers_carry_secret(self) -> None:
        _, session = self.make_client(FakeResponse(200, {"Pending": None}))
        self.assertEqual(session.headers["secret"], "token")
        self.assertEqual(session.headers["User-Agent"], "shipit_worker")

    def test_poll_working(self) -> None:
        record = JobRecord("42", "amd64", Release(("base",)))
        client, session = self.make_client(FakeResponse(200, {"Working": record.to_dict()}))
        self.assertEqual(client.poll("amd64"), Working(record))
        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("GET", "http://shipit.local/workerisstarted"))
        self.assertEqual(kwargs["params"], {"arch": "amd64"})
        self.assertEqual(kwargs["timeout"], 5)

    def test_poll_pending(self) -> None:
        client, _ = self.make_client(FakeResponse(200, {"Pending": None}))
        self.assertEqual(client.poll("amd64"), Pending())

    def test_poll_bad_secret(self) -> None:
        client, _ = self.make_client(FakeResponse(401, {"detail": "Bad secret."}))
        with self.assertRaises(BadSecret):
            client.poll("amd64")

    def test_poll_server_error(self) -> None:
        client, _ = self.make_client(FakeResponse(500, text="Failed to access job registry"))
        with self.assertRaises(ControlPlaneError):
            client.poll("amd64")

    def test_poll_transport_error(self) -> None:
        client, _ = self.make_client(requests.ConnectionError("refused"))
        with self.assertRaises(ControlPlaneError):
            client.poll("amd64")

    def test_poll_garbage_body(self) -> None:
        client, _ = self.make_client(FakeResponse(200, None))
        with self.assertRaises(ControlPlaneError):
            client.poll("amd64")

    def test_report_posts_wire_form(self) -> None:
        client, session = self.make_client(FakeResponse(200))
        report = BuildReport("42", "arm64", Livekit(), success=False, push_success=True, date="d")
        client.report(report)
        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("POST", "http://shipit.local/done"))
        self.assertEqual(kwargs["json"]["has_error"], True)
        self.assertEqual(kwargs["json"]["build_type"], {"name": "livekit"})

    def test_report_error(self) -> None:
        client, _ = self.make_client(FakeResponse(500, text="boom"))
        with self.assertRaises(ControlPlaneError):
            client.report(BuildReport("42", "arm64", Livekit(), True, True))


if __name__ == "__main__":
    unittest.main()
