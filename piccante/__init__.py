"""CAN bus management, an SLCAN protocol handler, persistent settings and logging."""

__version__ = "0.1.0"