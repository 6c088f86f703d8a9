"""Inkwell: agentic article editing with human-approved document mutations."""

__version__ = "0.1.0"

__all__ = ["__version__"]
