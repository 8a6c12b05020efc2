"""Fleet Relay: real-time location, route and chat relay between drivers and a monitoring dashboard."""

__version__ = "1.0.0"
