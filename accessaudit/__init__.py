"""Iterative, pattern-aware accessibility audits for websites."""

__version__ = "1.0.0"
