"""VTM Option - scheduler-driven options trading automation."""

__version__ = "1.0.0"
