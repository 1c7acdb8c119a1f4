import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from typing import List

import yaml

from .exceptions import ConfigError

VERSION = "0.0.1"
CONFIG_FILE_PATH = "config.yaml"

# Network
GEMINI_DEFAULT_PORT = 1965
HTTP_DEFAULT_PORT = 80

# I/O
READ_BYTES = 2048
MAX_REQUEST_BYTES = 1024
TIMEOUT_S = 30

# Tor
TOR_DEFAULT_CONTROL_ADDRESS = "127.0.0.1:9051"
TOR_CONTROL_TIMEOUT_S = 60.0


@dataclass
class RSSConfig:
    enabled: bool = False
    feed_source_gemini_path: str = ""


@dataclass
class TorConfig:
    enabled: bool = False
    control_port_file_path: str = "tor/control_port"
    control_auth_cookie_path: str = "tor/control_auth_cookie"
    hidden_service_private_key_path: str = "tor/hs_ed25519_secret_key"
    torrc_path: str = "tor/torrc"
    control_timeout: float = TOR_CONTROL_TIMEOUT_S


@dataclass
class GeminiTLSConfig:
    key_path: str = "tls/cert.key"
    cert_path: str = "tls/cert.pem"


@dataclass
class VirtualPortConfig:
    virtual_port: int = GEMINI_DEFAULT_PORT


@dataclass
class GeminiConfig:
    domain_names: List[str] = field(default_factory=list)
    data_path: str = "gemini/"
    listening_location: str = "127.0.0.1:1965"
    tls: GeminiTLSConfig = field(default_factory=GeminiTLSConfig)
    tor: VirtualPortConfig = field(default_factory=VirtualPortConfig)


@dataclass
class HTTPConfig:
    enabled: bool = False
    listening_location: str = "127.0.0.1:8080"
    data_path: str = "http/"
    layout_html_path: str = "http/layout.html"
    default_page_title: str = ""
    tor: VirtualPortConfig = field(
        default_factory=lambda: VirtualPortConfig(virtual_port=HTTP_DEFAULT_PORT)
    )


@dataclass
class Config:
    bergelmir_version: str = VERSION
    log_level: str = "INFO"
    rss: RSSConfig = field(default_factory=RSSConfig)
    tor: TorConfig = field(default_factory=TorConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)

    @classmethod
    def from_dict(cls, data) -> "Config":
        return _merge(cls(), data, "config")

    def to_dict(self) -> dict:
        return asdict(self)


def _merge(defaults, data, section: str):
    """Overlay a parsed YAML mapping on a dataclass instance of defaults."""
    if data is None:
        return defaults
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")

    kwargs = {}
    for f in fields(defaults):
        default = getattr(defaults, f.name)
        value = data.get(f.name)
        if is_dataclass(default):
            value = _merge(default, value, f"{section}.{f.name}")
        elif value is None:
            value = default
        kwargs[f.name] = value
    return type(defaults)(**kwargs)


def load_config(path: str = CONFIG_FILE_PATH) -> Config:
    if not os.path.exists(path):
        raise ConfigError(
            f"Unable to find config file {path}",
            {"hint": "Use `bergelmir init` to create one."},
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Unable to open config file at {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse config file {path}: {e}") from e

    config = Config.from_dict(data)
    if isinstance(config.gemini.domain_names, str):
        config.gemini.domain_names = config.gemini.domain_names.split()
    return config


def save_config(config: Config, path: str = CONFIG_FILE_PATH) -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False)
    except OSError as e:
        raise ConfigError(f"Unable to write config file {path}") from e
