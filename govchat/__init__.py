"""GovChat resilience and real-time connection layer."""

__version__ = "0.1.0"
