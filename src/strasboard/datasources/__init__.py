"""
Data sources package for strasboard.

This package provides a unified interface for all upstream integrations.
Each data source implements the DataSource interface and produces a Result
when fetched; caching is handled by the aggregator.
"""

from ..errors import (
    NoDataError,
    NotConfiguredError,
    SourceError,
    UpstreamError,
    UpstreamSemanticError,
)
from .base import DataSource, MultiItemSource, Result
from .electricity_source import ElectricityDataSource
from .registry import build_sources
from .temperature_source import TemperatureDataSource
from .tempo_source import TempoDataSource
from .transport_source import TransportDataSource
from .weather_source import WeatherDataSource

__all__ = [
    "DataSource",
    "MultiItemSource",
    "Result",
    "SourceError",
    "NotConfiguredError",
    "UpstreamError",
    "UpstreamSemanticError",
    "NoDataError",
    "build_sources",
    "WeatherDataSource",
    "TransportDataSource",
    "TemperatureDataSource",
    "ElectricityDataSource",
    "TempoDataSource",
]
