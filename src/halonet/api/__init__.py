"""HTTP API for the HALOnet engine."""
