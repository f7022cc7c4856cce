"""StrasBoard - freshness-aware dashboard aggregator"""

__version__ = "0.4.0"
