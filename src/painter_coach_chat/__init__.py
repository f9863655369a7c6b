"""PainterGrowth AI coach chat engine."""

__version__ = "0.1.0"
