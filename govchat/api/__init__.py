"""HTTP surface of the GovChat resilience layer."""
