"""SLA probe: synthetic transaction submission, verification and availability metrics."""

__version__ = "0.1.0"
