"""Configuration loading and validation"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Default config search paths (in order)
CONFIG_PATHS = [
    Path("config.yaml"),
    Path.home() / ".config" / "strasboard" / "config.yaml",
    Path("/etc/strasboard/config.yaml"),
]


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    warmup: bool = True  # Fetch every source once at startup


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass
class CacheConfig:
    fetch_timeout: float = 15.0  # Ceiling on a single source fetch, in seconds


@dataclass
class WeatherConfig:
    api_url: str = ""  # Open-Meteo forecast endpoint
    latitude: float = 48.58
    longitude: float = 7.75
    timezone: str = "Europe/Paris"


@dataclass
class TransportStopConfig:
    """A monitored stop: line, stop name and a destination to disambiguate direction"""
    line: str = ""
    stop: str = ""
    destination: str = ""


@dataclass
class TransportConfig:
    api_url: str = ""
    api_key: str = ""
    stops: list = field(default_factory=list)  # List of TransportStopConfig


@dataclass
class TemperatureConfig:
    sensor_url: str = ""
    cache_duration: int = 300


@dataclass
class ElectricityConfig:
    api_url: str = ""
    client_id: str = ""
    username: str = ""
    password: str = ""
    timezone: str = "Europe/Paris"
    publication_hour: int = 4  # Yesterday's consumption is not published before this hour


@dataclass
class TempoConfig:
    api_url: str = ""
    auth_url: str = ""
    auth_token: str = ""  # Base64 client_id:client_secret
    timezone: str = "Europe/Paris"
    provisional_hour: int = 8  # Tomorrow's color may appear from this hour
    definitive_hour: int = 11  # Tomorrow's color is final from this hour


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    weather: WeatherConfig = field(default_factory=WeatherConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    temperature: TemperatureConfig = field(default_factory=TemperatureConfig)
    electricity: ElectricityConfig = field(default_factory=ElectricityConfig)
    tempo: TempoConfig = field(default_factory=TempoConfig)


def find_config_file() -> Optional[Path]:
    """Find config file in standard locations"""
    for path in CONFIG_PATHS:
        if path.exists():
            return path
    return None


def _section(cls: type, data: Optional[dict[str, Any]]) -> Any:
    """Build a config dataclass, ignoring (and logging) unknown keys"""
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    return cls(**{k: v for k, v in data.items() if k in known})


def _parse_stops(raw: Any) -> list[TransportStopConfig]:
    """
    Parse transport stops.

    Accepts either a list of mappings or the compact string form
    "line,stop,destination;line,stop,destination".
    """
    if not raw:
        return []

    stops = []
    if isinstance(raw, str):
        for entry in raw.split(";"):
            entry = entry.strip()
            if not entry:
                continue
            parts = [p.strip() for p in entry.split(",", 2)]
            if len(parts) != 3:
                logger.warning(f"Invalid transport stop entry: {entry!r}")
                continue
            stops.append(TransportStopConfig(line=parts[0], stop=parts[1], destination=parts[2]))
        return stops

    for item in raw:
        stops.append(_section(TransportStopConfig, item))
    return stops


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from YAML file"""
    if config_path:
        path = Path(config_path)
    else:
        path = find_config_file()

    if path is None or not path.exists():
        logger.warning("No config file found, using defaults")
        return Config()

    logger.info(f"Loading config from: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    transport_data = dict(data.get("transport") or {})
    stops = _parse_stops(transport_data.pop("stops", None))
    transport = _section(TransportConfig, transport_data)
    transport.stops = stops

    return Config(
        server=_section(ServerConfig, data.get("server")),
        logging=_section(LoggingConfig, data.get("logging")),
        cache=_section(CacheConfig, data.get("cache")),
        weather=_section(WeatherConfig, data.get("weather")),
        transport=transport,
        temperature=_section(TemperatureConfig, data.get("temperature")),
        electricity=_section(ElectricityConfig, data.get("electricity")),
        tempo=_section(TempoConfig, data.get("tempo")),
    )
