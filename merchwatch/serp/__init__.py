"""Keyword search-result snapshots fed by the SERP work queue."""
