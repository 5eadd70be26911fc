from __future__ import annotations

import json
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from portal_common.errors import GatewayUnavailable
from portal_common.settings import Settings
from portal_common.utils.logging_setup import setup_logger

from .units import normalize_bytes

logger = setup_logger(__name__)

AUTHENTICATED_STATE = "authenticated"
TABULAR_MIN_FIELDS = 7

# "running" as a word, but not "not running".
_RUNNING_RE = re.compile(r"(?<!not )\brunning\b", re.IGNORECASE)

Runner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[str]"]


def run_command(args: Sequence[str], timeout: float) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(
        list(args),
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        check=False,
    )


@dataclass
class ClientSession:
    """
    One client observed by the gateway at collection time.
    Built fresh every run and never persisted.
    """

    ip: str
    mac: str  # Informational only
    download_bytes: int
    upload_bytes: int
    duration_seconds: int
    token: str
    state: str

    @property
    def is_authenticated(self) -> bool:
        return self.state.strip().lower() == AUTHENTICATED_STATE


def _execute(runner: Runner, args: Sequence[str], timeout: float) -> "subprocess.CompletedProcess[str]":
    try:
        return runner(args, timeout)
    except subprocess.TimeoutExpired as exc:
        raise GatewayUnavailable(f"{args[0]} timed out after {timeout}s") from exc
    except OSError as exc:
        raise GatewayUnavailable(f"{args[0]} could not be executed: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise GatewayUnavailable(f"{args[0]} produced undecodable output") from exc


def gateway_is_running(settings: Settings, runner: Runner = run_command) -> bool:
    """Ask the gateway init script whether the captive portal is up."""
    args = shlex.split(settings.nds_status_cmd)
    if not args:
        return False
    try:
        result = _execute(runner, args, settings.query_timeout)
    except GatewayUnavailable as exc:
        logger.debug("Gateway status check failed: %s", exc)
        return False

    output = f"{result.stdout or ''}\n{result.stderr or ''}"
    return bool(_RUNNING_RE.search(output))


class ClientSource:
    """One way of asking ndsctl for its clients."""

    name = "base"

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def fetch(self, runner: Runner) -> Optional[List[ClientSession]]:
        """Return every client reported, or None if this mode is unavailable."""
        raise NotImplementedError

    def _run(self, runner: Runner, *subcommand: str) -> "subprocess.CompletedProcess[str]":
        args = [self._settings.ndsctl_bin, *subcommand]
        return _execute(runner, args, self._settings.query_timeout)


class JsonClientSource(ClientSource):
    """``ndsctl json``, available on newer nodogsplash releases."""

    name = "json"

    def fetch(self, runner: Runner) -> Optional[List[ClientSession]]:
        try:
            result = self._run(runner, "json")
        except GatewayUnavailable as exc:
            logger.debug("Structured query unavailable: %s", exc)
            return None

        if result.returncode != 0 or not (result.stdout or "").strip():
            return None

        try:
            data = json.loads(result.stdout)
        except ValueError:
            logger.debug("Structured query returned non-JSON output.")
            return None

        records = _extract_records(data)
        if records is None:
            return None
        return [_session_from_record(record) for record in records]


class TabularClientSource(ClientSource):
    """
    ``ndsctl clients`` plain listing.

    The first line is a header. Every other line holds at least seven
    whitespace-separated columns: ip, mac, download, upload, duration,
    token, state. Shorter lines are skipped.
    """

    name = "tabular"

    def fetch(self, runner: Runner) -> Optional[List[ClientSession]]:
        try:
            result = self._run(runner, "clients")
        except GatewayUnavailable as exc:
            logger.warning("ndsctl unavailable: %s", exc)
            return None

        return parse_client_table(result.stdout or "")


def parse_client_table(text: str) -> List[ClientSession]:
    sessions: List[ClientSession] = []
    for line in text.splitlines()[1:]:
        fields = line.split()
        if len(fields) < TABULAR_MIN_FIELDS:
            continue
        ip, mac, download, upload, duration, token, state = fields[:TABULAR_MIN_FIELDS]
        sessions.append(
            ClientSession(
                ip=ip,
                mac=mac,
                download_bytes=normalize_bytes(download),
                upload_bytes=normalize_bytes(upload),
                duration_seconds=normalize_bytes(duration),
                token=token,
                state=state,
            )
        )
    return sessions


def _extract_records(data: object) -> Optional[List[dict]]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]

    if not isinstance(data, dict):
        return None

    clients = data.get("clients", data)
    if isinstance(clients, list):
        return [item for item in clients if isinstance(item, dict)]
    if isinstance(clients, dict):
        # nodogsplash keys its clients by MAC address
        records = []
        for key, value in clients.items():
            if isinstance(value, dict):
                record = dict(value)
                record.setdefault("mac", key)
                records.append(record)
        return records
    return None


def _first_present(record: dict, *keys: str) -> object:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def _session_from_record(record: dict) -> ClientSession:
    return ClientSession(
        ip=str(record.get("ip") or "").strip(),
        mac=str(record.get("mac") or "").strip(),
        download_bytes=normalize_bytes(_first_present(record, "downloaded", "download")),
        upload_bytes=normalize_bytes(_first_present(record, "uploaded", "upload")),
        duration_seconds=normalize_bytes(record.get("duration")),
        token=str(record.get("token") or ""),
        state=str(record.get("state") or ""),
    )


class SessionCollector:
    """
    Reads the authenticated sessions from the gateway.

    The structured source is tried first; the tabular listing is only
    consulted when it is unavailable. A missing utility, empty output or
    garbage all produce an empty list.
    """

    def __init__(
        self,
        settings: Settings,
        runner: Runner = run_command,
        sources: Optional[Sequence[ClientSource]] = None,
    ) -> None:
        self._runner = runner
        self._sources = list(sources) if sources is not None else [
            JsonClientSource(settings),
            TabularClientSource(settings),
        ]

    def list_active_sessions(self) -> List[ClientSession]:
        for source in self._sources:
            sessions = source.fetch(self._runner)
            if sessions is None:
                continue
            active = [session for session in sessions if session.is_authenticated]
            logger.debug(
                "ndsctl %s reported %s client(s), %s authenticated.",
                source.name,
                len(sessions),
                len(active),
            )
            return active
        return []
