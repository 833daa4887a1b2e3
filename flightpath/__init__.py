"""Receive MAVLink drone telemetry and serve it as Connect streaming HTTP services."""

__version__ = "0.1.0"