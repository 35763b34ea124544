import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv
from loguru import logger

from .errors import ConfigurationError
from .routing.rule import RemapRule

DEFAULT_CLIENT_ID = "mqtt-topic-remapper"
DEFAULT_PORT = 1883


@dataclass(frozen=True)
class BrokerSettings:
    host: str
    port: int = DEFAULT_PORT
    username: str | None = None
    password: str | None = None
    client_id: str = DEFAULT_CLIENT_ID
    keepalive: int = 60
    qos: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for the initial broker handshake, without backoff."""

    max_attempts: int = 3
    attempt_timeout: float = 3.0


@dataclass(frozen=True)
class RouterSettings:
    grace_period: float = 5.0
    max_workers: int | None = None
    disconnect_timeout: float = 0.25


@dataclass(frozen=True)
class RemapperConfig:
    rules: list[RemapRule]
    broker: BrokerSettings
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    router: RouterSettings = field(default_factory=RouterSettings)
    log_level: str = "INFO"


def read_config_file(path: str) -> dict:
    """Reads a TOML or YAML config file, chosen by its suffix."""
    config_path = Path(os.getcwd(), path)

    try:
        if config_path.suffix in (".yaml", ".yml"):
            with open(config_path, "r") as f:
                config = yaml.safe_load(f) or {}
        else:
            with open(config_path, "rb") as f:
                config = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found in '{config_path}'") from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Syntax error in config file '{config_path}': {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Could not read config file '{config_path}': {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file '{config_path}' must contain a table at the top level.")

    logger.info(f"Loading config from file {config_path}")
    return config


def parse_rules(config: Mapping[str, Any]) -> list[RemapRule]:
    entries = config.get("remap")
    if not entries:
        raise ConfigurationError("No remaps are defined in the configuration.")
    if not isinstance(entries, list):
        raise ConfigurationError("'remap' must be a list of tables.")

    rules = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Remap #{index} must be a table.")

        source = entry.get("from")
        dest = entry.get("to")
        for key, value in (("from", source), ("to", dest)):
            if not isinstance(value, str) or not value:
                raise ConfigurationError(f"Remap #{index} needs a non-empty string '{key}'.")
            if "+" in value or "#" in value:
                raise ConfigurationError(
                    f"Remap #{index}: '{key}' must be an exact topic, wildcards are not supported (got '{value}')."
                )

        mappings = entry.get("message") or {}
        if not isinstance(mappings, dict):
            raise ConfigurationError(f"Remap #{index} ('{source}'): 'message' must be a table.")
        for old, new in mappings.items():
            if not isinstance(old, str) or not isinstance(new, str):
                raise ConfigurationError(
                    f"Remap #{index} ('{source}'): value mappings must map strings to strings, "
                    f"got {old!r} = {new!r}."
                )
            if not old:
                raise ConfigurationError(
                    f"Remap #{index} ('{source}'): an empty string cannot be replaced."
                )

        rules.append(RemapRule(source_topic=source, dest_topic=dest, substitutions=mappings))

    return rules


def _section(config: Mapping[str, Any], name: str) -> dict:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'{name}' must be a table.")
    return section


def _number(section: dict, key: str, default, kind=float, minimum=0, positive=False):
    value = section.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"'{key}' must be a number, got {value!r}.")
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"'{key}' must be a whole number, got {value!r}.")
    try:
        value = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'{key}' must be a number, got {value!r}.") from e
    if value < minimum:
        raise ConfigurationError(f"'{key}' must be at least {minimum}, got {value}.")
    if positive and value <= 0:
        raise ConfigurationError(f"'{key}' must be greater than 0, got {value}.")
    return value


def parse_server_uri(uri: str) -> tuple[str, int]:
    """
    Splits a broker address such as 'localhost:1883' or 'tcp://broker'
    into host and port.
    """
    for scheme in ("tcp://", "mqtt://"):
        if uri.startswith(scheme):
            uri = uri[len(scheme) :]
            break

    host, sep, port = uri.rpartition(":")
    if not sep:
        host, port = uri, str(DEFAULT_PORT)
    if not host:
        raise ConfigurationError(f"Broker address '{uri}' has no host.")
    try:
        return host, int(port)
    except ValueError as e:
        raise ConfigurationError(f"Broker address '{uri}' has an invalid port.") from e


def load_environment():
    # A .env file is optional, real environment variables always take precedence.
    env_file = os.getenv("REMAPPER_ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)
        logger.debug(f"Environment loaded from '{env_file}'.")


def broker_settings(config: Mapping[str, Any], environ: Mapping[str, str]) -> BrokerSettings:
    server_uri = environ.get("MQTT_SERVER_URI")
    if not server_uri:
        raise ConfigurationError("Environment variable MQTT_SERVER_URI is not set.")
    host, port = parse_server_uri(server_uri)

    section = _section(config, "broker")
    qos = _number(section, "qos", 0, kind=int)
    if qos > 2:
        raise ConfigurationError(f"'qos' must be 0, 1 or 2, got {qos}.")

    # No username means an anonymous session.
    username = environ.get("MQTT_USERNAME") or None
    return BrokerSettings(
        host=host,
        port=port,
        username=username,
        password=(environ.get("MQTT_PASSWORD") or None) if username else None,
        client_id=environ.get("MQTT_CLIENT_ID") or section.get("client_id", DEFAULT_CLIENT_ID),
        keepalive=_number(section, "keepalive", 60, kind=int, minimum=1),
        qos=qos,
    )


def load_config(path: str, environ: Mapping[str, str] | None = None) -> RemapperConfig:
    config = read_config_file(path)
    if environ is None:
        load_environment()
        environ = os.environ

    rules = parse_rules(config)
    broker = _section(config, "broker")
    router = _section(config, "router")

    return RemapperConfig(
        rules=rules,
        broker=broker_settings(config, environ),
        retry=RetryPolicy(
            max_attempts=_number(broker, "connect_attempts", 3, kind=int, minimum=1),
            attempt_timeout=_number(broker, "connect_timeout", 3.0, positive=True),
        ),
        router=RouterSettings(
            grace_period=_number(router, "grace_period", 5.0),
            max_workers=_number(router, "max_workers", None, kind=int, minimum=1),
            disconnect_timeout=_number(router, "disconnect_timeout", 0.25),
        ),
        log_level=str(_section(config, "logging").get("level", "INFO")).upper(),
    )
