from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from portal_agent.nds_collector.collector import ClientSession
from portal_common.utils.logging_setup import setup_logger

logger = setup_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


@dataclass
class DataUsage:
    download_bytes: int
    upload_bytes: int
    last_updated: str

    @property
    def total_bytes(self) -> int:
        # Always derived, never taken from upstream.
        return self.download_bytes + self.upload_bytes

    def to_dict(self) -> dict:
        return {
            "downloadBytes": self.download_bytes,
            "uploadBytes": self.upload_bytes,
            "totalBytes": self.total_bytes,
            "lastUpdated": self.last_updated,
        }


@dataclass
class SessionUpdate:
    """
    Usage report for one client, matched to a portal session by IP on the
    server side. ``session_id`` is always sent as null.
    """

    user_ip: str
    data_usage: DataUsage
    session_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "userIP": self.user_ip,
            "sessionId": self.session_id,
            "dataUsage": self.data_usage.to_dict(),
        }


@dataclass
class MetricsPayload:
    session_updates: List[SessionUpdate] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.session_updates

    def to_dict(self) -> dict:
        return {"sessionUpdates": [update.to_dict() for update in self.session_updates]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


def build_payload(
    sessions: Iterable[ClientSession],
    clock: Callable[[], str] = utc_timestamp,
) -> MetricsPayload:
    """
    Map collected sessions onto the data-usage wire schema.

    Sessions without an IP, or with a negative byte count, are dropped.
    Input order is preserved.
    """
    payload = MetricsPayload()
    for session in sessions:
        if not session.ip:
            logger.debug("Skipping client without IP (mac=%s).", session.mac)
            continue
        if session.download_bytes < 0 or session.upload_bytes < 0:
            logger.debug("Skipping %s: negative byte counters.", session.ip)
            continue
        payload.session_updates.append(
            SessionUpdate(
                user_ip=session.ip,
                data_usage=DataUsage(
                    download_bytes=session.download_bytes,
                    upload_bytes=session.upload_bytes,
                    last_updated=clock(),
                ),
            )
        )
    return payload
