"""Control channel to the engine process."""

from almondcloud.backend.client import BackendClient, ConnectionState, parse_address

__all__ = ["BackendClient", "ConnectionState", "parse_address"]
