"""HALOnet payment batch orchestration and risk control engine."""

__version__ = "0.1.0"
