"""TCP telemetry relay: packet protocol, endpoints, client and server."""

__version__ = "0.1.0"