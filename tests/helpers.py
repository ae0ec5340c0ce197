"""
Test doubles shared by the HookRelay test modules.
"""
from datetime import datetime, timedelta, timezone

import httpx


SCHEDULER_HEADERS = {"X-Scheduler-Secret": "test-scheduler-secret"}


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class Destination:
    """
    Mock webhook receiver.

    Responds with the queued status codes in order (repeating the last one)
    and records every request it sees.
    """

    def __init__(self, *status_codes: int):
        self.status_codes = list(status_codes) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.status_codes) - 1)
        return httpx.Response(self.status_codes[index])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))
