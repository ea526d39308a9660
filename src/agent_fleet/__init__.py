"""Queue coordination and lifecycle control for a small fleet of coding agents."""

__version__ = "0.3.0"
