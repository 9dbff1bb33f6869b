"""Background job engine for AI code generation."""

__version__ = "0.1.0"
