"""Almanac: calendar aggregation with recurrence expansion and multi-provider sync."""

__version__ = "0.1.0"
