"""Bourse - a simulated single-instrument securities market."""

__version__ = "1.0.0"
