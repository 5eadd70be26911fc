from __future__ import annotations


class PortalAgentError(Exception):
    """Base error for the captive-portal metrics agent."""


class ConfigMissing(PortalAgentError):
    def __init__(self, message: str, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class NoTransportAvailable(PortalAgentError):
    """No usable HTTP mechanism for the configured metrics endpoint."""


class GatewayUnavailable(PortalAgentError):
    """The gateway control utility could not be executed."""
