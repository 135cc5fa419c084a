"""Merch-on-Demand listing monitor: discovery, extraction and scoring."""

__version__ = "0.3.0"
