import json
import shlex
import subprocess
import sys
from dataclasses import replace

import pytest

from portal_agent.nds_collector.collector import (
    ClientSession,
    SessionCollector,
    gateway_is_running,
    parse_client_table,
)
from tests.conftest import STATUS_CMD, FakeRunner

TABLE_HEADER = "IP MAC Download Upload Duration Token State\n"


def _failed(stdout="", returncode=1):
    return subprocess.CompletedProcess(["ndsctl"], returncode, stdout, "error")


class TestGatewayIsRunning:
    """The init script must report the portal as running."""

    def test_running(self, settings):
        runner = FakeRunner({STATUS_CMD: " * nodogsplash is running\n"})
        assert gateway_is_running(settings, runner) is True

    def test_not_running(self, settings):
        runner = FakeRunner({STATUS_CMD: " * nodogsplash is not running\n"})
        assert gateway_is_running(settings, runner) is False

    def test_stopped(self, settings):
        runner = FakeRunner({STATUS_CMD: "inactive\n"})
        assert gateway_is_running(settings, runner) is False

    def test_missing_init_script(self, settings):
        assert gateway_is_running(settings, FakeRunner()) is False

    def test_timeout(self, settings):
        runner = FakeRunner(
            {STATUS_CMD: subprocess.TimeoutExpired(STATUS_CMD.split(), 10)}
        )
        assert gateway_is_running(settings, runner) is False


class TestStructuredSource:
    """ndsctl json is used directly when it answers."""

    def test_list_of_records(self, settings):
        clients = [
            {
                "ip": "10.0.0.5",
                "mac": "aa:bb:cc:dd:ee:01",
                "download": "1MB",
                "upload": 2048,
                "duration": 300,
                "token": "t1",
                "state": "Authenticated",
            }
        ]
        runner = FakeRunner({"ndsctl json": json.dumps(clients)})

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert sessions == [
            ClientSession(
                ip="10.0.0.5",
                mac="aa:bb:cc:dd:ee:01",
                download_bytes=1048576,
                upload_bytes=2048,
                duration_seconds=300,
                token="t1",
                state="Authenticated",
            )
        ]
        assert not runner.called("ndsctl clients")

    def test_nodogsplash_mapping_shape(self, settings):
        data = {
            "client_length": 2,
            "clients": {
                "aa:bb:cc:dd:ee:01": {
                    "ip": "10.0.0.5",
                    "downloaded": 500,
                    "uploaded": 100,
                    "state": "Authenticated",
                },
                "aa:bb:cc:dd:ee:02": {
                    "ip": "10.0.0.6",
                    "downloaded": 1,
                    "uploaded": 1,
                    "state": "Preauthenticated",
                },
            },
        }
        runner = FakeRunner({"ndsctl json": json.dumps(data)})

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert [s.ip for s in sessions] == ["10.0.0.5"]
        assert sessions[0].mac == "aa:bb:cc:dd:ee:01"
        assert sessions[0].download_bytes == 500
        assert sessions[0].upload_bytes == 100

    def test_state_match_is_case_insensitive(self, settings):
        clients = [
            {"ip": "10.0.0.1", "state": "authenticated"},
            {"ip": "10.0.0.2", "state": "AUTHENTICATED"},
            {"ip": "10.0.0.3", "state": "Preauthenticated"},
            {"ip": "10.0.0.4"},
        ]
        runner = FakeRunner({"ndsctl json": json.dumps(clients)})

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert [s.ip for s in sessions] == ["10.0.0.1", "10.0.0.2"]

    def test_empty_client_set_does_not_fall_back(self, settings):
        runner = FakeRunner(
            {
                "ndsctl json": json.dumps({"client_length": 0, "clients": {}}),
                "ndsctl clients": TABLE_HEADER
                + "10.0.0.9 aa 1 1 1 tok Authenticated\n",
            }
        )

        assert SessionCollector(settings, runner).list_active_sessions() == []
        assert not runner.called("ndsctl clients")


class TestTabularFallback:
    """ndsctl clients is parsed when the structured query is unavailable."""

    def test_only_authenticated_clients_survive(self, settings):
        table = (
            TABLE_HEADER
            + "10.0.0.5 aa:bb:cc:dd:ee:01 1MB 2KB 120 tok1 Authenticated\n"
            + "10.0.0.6 aa:bb:cc:dd:ee:02 10 20 30 tok2 Not-Authenticated\n"
        )
        runner = FakeRunner({"ndsctl json": _failed(), "ndsctl clients": table})

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert len(sessions) == 1
        assert sessions[0].ip == "10.0.0.5"
        assert sessions[0].download_bytes == 1048576
        assert sessions[0].upload_bytes == 2048
        assert runner.called("ndsctl json")

    def test_fallback_when_json_is_not_json(self, settings):
        table = TABLE_HEADER + "10.0.0.5 aa 100 200 1 tok Authenticated\n"
        runner = FakeRunner(
            {"ndsctl json": "Unknown command: json", "ndsctl clients": table}
        )

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert [s.ip for s in sessions] == ["10.0.0.5"]

    def test_fallback_when_json_command_missing(self, settings):
        table = TABLE_HEADER + "10.0.0.5 aa 100 200 1 tok Authenticated\n"
        runner = FakeRunner(
            {
                "ndsctl json": FileNotFoundError(2, "missing", "ndsctl"),
                "ndsctl clients": table,
            }
        )

        sessions = SessionCollector(settings, runner).list_active_sessions()

        assert [s.ip for s in sessions] == ["10.0.0.5"]

    def test_short_lines_are_skipped(self):
        table = (
            TABLE_HEADER
            + "10.0.0.5 aa 100 200\n"
            + "\n"
            + "10.0.0.7 bb 5 6 7 tok Authenticated\n"
        )

        sessions = parse_client_table(table)

        assert [s.ip for s in sessions] == ["10.0.0.7"]

    def test_header_line_is_ignored(self):
        table = "10.0.0.1 aa 1 1 1 tok Authenticated\n"
        assert parse_client_table(table) == []

    def test_extra_columns_are_ignored(self):
        table = TABLE_HEADER + "10.0.0.5 aa 1KB 1 1 tok Authenticated extra col\n"
        sessions = parse_client_table(table)
        assert sessions[0].state == "Authenticated"
        assert sessions[0].download_bytes == 1024


class TestEmptyResults:
    """No output, garbage or a missing utility all mean no clients."""

    def test_no_output(self, settings):
        runner = FakeRunner({"ndsctl json": _failed(), "ndsctl clients": ""})
        assert SessionCollector(settings, runner).list_active_sessions() == []

    def test_garbage(self, settings):
        runner = FakeRunner(
            {"ndsctl json": "{{{not json", "ndsctl clients": "\x00\x01 garbage\n??"}
        )
        assert SessionCollector(settings, runner).list_active_sessions() == []

    def test_utility_missing(self, settings):
        runner = FakeRunner()
        assert SessionCollector(settings, runner).list_active_sessions() == []
        assert runner.called("ndsctl json")
        assert runner.called("ndsctl clients")

    def test_custom_ndsctl_binary(self, settings):
        custom = replace(settings, ndsctl_bin="/usr/bin/ndsctl")
        runner = FakeRunner({"/usr/bin/ndsctl json": "[]"})

        assert SessionCollector(custom, runner).list_active_sessions() == []
        assert runner.called("/usr/bin/ndsctl json")


def _script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return str(path)


@pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh")
class TestUndecodableOutput:
    """Bytes that are not UTF-8 never escape the collector."""

    def test_bad_bytes_fall_back_to_table(self, settings, tmp_path):
        ndsctl = _script(
            tmp_path,
            "ndsctl",
            'case "$1" in\n'
            "  json) printf '\\377\\376 not json\\n' ;;\n"
            "  clients) printf 'IP MAC Download Upload Duration Token State\\n"
            "\\377\\376 garbage\\n"
            "10.0.0.5 aa:bb 1KB 2KB 60 tok Authenticated\\n' ;;\n"
            "esac\n",
        )

        sessions = SessionCollector(replace(settings, ndsctl_bin=ndsctl)).list_active_sessions()

        assert [s.ip for s in sessions] == ["10.0.0.5"]
        assert sessions[0].download_bytes == 1024

    def test_garbage_only_gives_no_clients(self, settings, tmp_path):
        ndsctl = _script(tmp_path, "ndsctl", "printf 'IP MAC\\n\\377\\376 garbage\\n'\n")

        collector = SessionCollector(replace(settings, ndsctl_bin=ndsctl))

        assert collector.list_active_sessions() == []

    def test_status_line_with_bad_byte(self, settings, tmp_path):
        status = _script(tmp_path, "nodogsplash", "printf 'nodogsplash is running \\377\\n'\n")
        custom = replace(settings, nds_status_cmd=f"{shlex.quote(status)} status")

        assert gateway_is_running(custom) is True

    def test_runner_decode_error_is_absorbed(self, settings):
        error = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        runner = FakeRunner({"ndsctl json": error, "ndsctl clients": error})

        assert SessionCollector(settings, runner).list_active_sessions() == []
        assert runner.called("ndsctl clients")
