from __future__ import annotations

import argparse
import sys
import time
from enum import Enum
from typing import Optional, Sequence

from portal_agent.nds_collector.collector import (
    Runner,
    SessionCollector,
    gateway_is_running,
    run_command,
)
from portal_agent.payload.models import build_payload
from portal_agent.run_lock import RunLock
from portal_agent.uploader.transmitter import MetricsTransmitter, TransmitOutcome
from portal_common.errors import ConfigMissing, NoTransportAvailable
from portal_common.settings import Settings, get_settings
from portal_common.utils.logging_setup import log_success, setup_logger
from portal_common.utils.timer import BlockTimer

logger = setup_logger("portal_agent")

INTERVAL_SECONDS = 60


class RunOutcome(Enum):
    SENT = ("sent", 0)
    SOFT_REJECTED = ("soft_rejected", 0)
    TRANSPORT_FAILED = ("transport_failed", 0)
    NO_SESSIONS = ("no_sessions", 0)
    GATEWAY_NOT_RUNNING = ("gateway_not_running", 0)
    DRY_RUN = ("dry_run", 0)
    LOCKED = ("locked", 0)
    FAILED = ("failed", 0)
    NO_TRANSPORT = ("no_transport", 1)
    CONFIG_MISSING = ("config_missing", 1)

    def __init__(self, label: str, exit_code: int) -> None:
        self.label = label
        self.exit_code = exit_code

    @property
    def is_fatal(self) -> bool:
        return self.exit_code != 0


_TRANSMIT_OUTCOMES = {
    TransmitOutcome.SUCCESS: RunOutcome.SENT,
    TransmitOutcome.SOFT_REJECTION: RunOutcome.SOFT_REJECTED,
    TransmitOutcome.TRANSPORT_FAILURE: RunOutcome.TRANSPORT_FAILED,
}


def run_once(
    settings: Settings,
    *,
    runner: Runner = run_command,
    transmitter: Optional[MetricsTransmitter] = None,
    dry_run: bool = False,
) -> RunOutcome:
    """
    One collection pass: gateway check, collect, build, send.

    Never exits the process; the caller maps the outcome to an exit code.
    """
    logger.info("Starting metrics collection...")

    if not gateway_is_running(settings, runner):
        logger.warning("NoDogSplash is not running")
        return RunOutcome.GATEWAY_NOT_RUNNING

    collector = SessionCollector(settings, runner)
    with BlockTimer("Client collection", logger):
        sessions = collector.list_active_sessions()

    if not sessions:
        logger.info("No active clients found")
        return RunOutcome.NO_SESSIONS

    logger.info("Found %s active client(s), preparing payload...", len(sessions))
    payload = build_payload(sessions)
    if payload.is_empty():
        logger.info("No reportable clients after filtering")
        return RunOutcome.NO_SESSIONS
    logger.debug("Payload prepared (%s update(s))", len(payload.session_updates))

    if dry_run:
        logger.info("Dry run, payload not sent: %s", payload.to_json())
        return RunOutcome.DRY_RUN

    if transmitter is None:
        try:
            transmitter = MetricsTransmitter.from_settings(settings)
        except NoTransportAvailable as exc:
            logger.error("%s", exc)
            return RunOutcome.NO_TRANSPORT

    with BlockTimer("Metrics upload", logger):
        result = transmitter.send(payload, settings.router_id, settings.contract_id)

    if result.outcome is TransmitOutcome.SUCCESS:
        log_success(
            logger,
            "Metrics sent successfully (%s session update(s))",
            len(payload.session_updates),
        )
    elif result.outcome is TransmitOutcome.SOFT_REJECTION:
        logger.warning("Server responded but not successful: %s", result.raw_response)
    else:
        logger.error(
            "Failed to send metrics after %s attempt(s): %s",
            result.attempts,
            result.error,
        )
    return _TRANSMIT_OUTCOMES[result.outcome]


def execute_run(
    settings: Settings,
    *,
    runner: Runner = run_command,
    transmitter: Optional[MetricsTransmitter] = None,
    dry_run: bool = False,
) -> RunOutcome:
    lock = RunLock(settings.run_lock_path)
    try:
        acquired = lock.acquire()
    except OSError as exc:
        logger.warning("Run lock unavailable (%s), continuing unlocked", exc)
        acquired = True

    if not acquired:
        logger.warning("Another metrics run is still in progress, skipping")
        return RunOutcome.LOCKED

    try:
        return run_once(
            settings, runner=runner, transmitter=transmitter, dry_run=dry_run
        )
    except Exception:
        logger.exception("Metrics collection failed")
        return RunOutcome.FAILED
    finally:
        lock.release()


def run(
    settings: Settings,
    interval_seconds: int = INTERVAL_SECONDS,
    dry_run: bool = False,
) -> int:
    """Repeat runs on a fixed interval, for hosts without cron."""
    logger.info("Metrics agent started (interval=%ss).", interval_seconds)
    try:
        while True:
            start = time.monotonic()
            outcome = execute_run(settings, dry_run=dry_run)
            if outcome.is_fatal:
                return outcome.exit_code

            elapsed = time.monotonic() - start
            sleep_time = max(0.0, interval_seconds - elapsed)
            if sleep_time:
                time.sleep(sleep_time)
    except KeyboardInterrupt:
        logger.info("Metrics agent stopped.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zaanet-metrics",
        description="Report captive-portal client data usage to the portal server.",
    )
    parser.add_argument("--config", default=None, help="router config file")
    parser.add_argument(
        "--loop", action="store_true", help="keep running instead of a single pass"
    )
    parser.add_argument("--interval", type=int, default=INTERVAL_SECONDS)
    parser.add_argument(
        "--dry-run", action="store_true", help="log the payload instead of sending it"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings(args.config)
    except ConfigMissing as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return RunOutcome.CONFIG_MISSING.exit_code

    if args.loop:
        return run(
            settings, interval_seconds=max(1, args.interval), dry_run=args.dry_run
        )
    return execute_run(settings, dry_run=args.dry_run).exit_code


if __name__ == "__main__":
    sys.exit(main())
