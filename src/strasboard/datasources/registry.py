"""Data source registry for managing all data sources"""

import logging
from collections.abc import Iterator
from typing import Optional

from ..config import Config
from .base import DataSource

logger = logging.getLogger(__name__)


class DataSourceRegistry:
    """
    Registry for managing data sources.

    Provides a central place to register, access, and manage all data
    sources. Names are unique; they are the response cache keys.
    """

    def __init__(self, sources: Optional[list[DataSource]] = None):
        """Initialize registry, optionally with an initial list of sources"""
        self._sources: dict[str, DataSource] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: DataSource) -> None:
        """
        Register a data source.

        Args:
            source: The data source to register

        Raises:
            ValueError: If a source with the same name is already registered
        """
        name = source.name()
        if name in self._sources:
            raise ValueError(f"Data source '{name}' is already registered")

        self._sources[name] = source
        logger.info(f"Registered data source: {name}")

    def get(self, name: str) -> Optional[DataSource]:
        """
        Get a data source by name.

        Returns:
            The data source, or None if not found
        """
        return self._sources.get(name)

    def get_all(self) -> list[DataSource]:
        return list(self._sources.values())

    def names(self) -> list[str]:
        return list(self._sources)

    async def initialize_all(self) -> int:
        """
        Initialize all registered data sources.

        Returns:
            Number of sources initialized successfully
        """
        logger.info(f"Initializing {len(self._sources)} data source(s)...")

        initialized = 0
        for name, source in self._sources.items():
            try:
                await source.initialize()
                initialized += 1
            except Exception as e:
                logger.error(f"Error initializing data source '{name}': {e}")
        return initialized

    async def shutdown_all(self) -> None:
        """Shutdown all registered data sources"""
        logger.info(f"Shutting down {len(self._sources)} data source(s)...")

        for name, source in self._sources.items():
            try:
                await source.shutdown()
            except Exception as e:
                logger.error(f"Error shutting down data source '{name}': {e}")

    def __len__(self) -> int:
        """Return number of registered sources"""
        return len(self._sources)

    def __contains__(self, name: str) -> bool:
        """Check if a source is registered"""
        return name in self._sources

    def __iter__(self) -> Iterator[DataSource]:
        return iter(list(self._sources.values()))


def build_sources(config: Config) -> DataSourceRegistry:
    """Create the registry of every source the dashboard serves"""
    from .electricity_source import ElectricityDataSource
    from .temperature_source import TemperatureDataSource
    from .tempo_source import TempoDataSource
    from .transport_source import TransportDataSource
    from .weather_source import WeatherDataSource

    return DataSourceRegistry(
        [
            WeatherDataSource(config.weather),
            TransportDataSource(config.transport),
            TemperatureDataSource(config.temperature),
            ElectricityDataSource(config.electricity),
            TempoDataSource(config.tempo),
        ]
    )
