"""Exception taxonomy for the attendance bridge."""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for recoverable bridge failures."""


class ConnectError(BridgeError):
    """The terminal refused or did not answer a connection attempt."""


class FetchError(BridgeError):
    """A read against a connected terminal failed."""


class DeviceTimeoutError(FetchError):
    """A device operation exceeded its send/receive budget."""


class ParseError(BridgeError):
    """A pushed ATTLOG line could not be tokenized."""


class DistributionError(BridgeError):
    """The pub/sub medium rejected a connect or publish."""


__all__ = [
    "BridgeError",
    "ConnectError",
    "FetchError",
    "DeviceTimeoutError",
    "ParseError",
    "DistributionError",
]
