"""LinkLoop glucose alert and care-circle engine."""

__version__ = "0.1.0"
