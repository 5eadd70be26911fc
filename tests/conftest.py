import os
import subprocess
import tempfile

import pytest

# Keep the run log out of /tmp before any agent module configures logging.
_LOG_DIR = tempfile.mkdtemp(prefix="zaanet-tests-")
os.environ.setdefault("ZAANET_LOG_FILE", os.path.join(_LOG_DIR, "zaanet-metrics.log"))

from portal_common.settings import Settings  # noqa: E402

STATUS_CMD = "/etc/init.d/nodogsplash status"


class FakeRunner:
    """Stands in for subprocess.run, keyed by the joined command line."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, args, timeout):
        args = list(args)
        self.calls.append(args)
        response = self.responses.get(" ".join(args))
        if response is None:
            raise FileNotFoundError(2, "No such file or directory", args[0])
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            return subprocess.CompletedProcess(args, 0, response, "")
        return response

    def called(self, command):
        return command.split() in self.calls


class FakeResponse:
    def __init__(self, body, status=200):
        self.status = status
        self._body = body.encode("utf-8") if isinstance(body, str) else body

    def read(self, size=-1):
        if size is None or size < 0:
            size = len(self._body)
        data, self._body = self._body[:size], self._body[size:]
        return data

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return None


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now


class SlowResponse(FakeResponse):
    """Hands out one small chunk per read, advancing the clock each time."""

    def __init__(self, body, clock, seconds_per_chunk, chunk_size=4):
        super().__init__(body)
        self._clock = clock
        self._seconds_per_chunk = seconds_per_chunk
        self._chunk_size = chunk_size

    def read(self, size=-1):
        self._clock.now += self._seconds_per_chunk
        return super().read(self._chunk_size)


class FakeOpener:
    """Replays responses or raises exceptions in order, recording requests."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.timeouts = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        self.timeouts.append(timeout)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def settings(tmp_path):
    return Settings(
        server_base_url="http://portal.test",
        router_id="router-1",
        contract_id="contract-9",
        run_lock_path=str(tmp_path / "zaanet-metrics.lock"),
    )


@pytest.fixture
def running_gateway():
    return {STATUS_CMD: " * nodogsplash is running\n"}
