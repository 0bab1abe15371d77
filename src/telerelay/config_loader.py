"""JSON configuration file loading shared by the agent and the server."""

import json
from pathlib import Path
from typing import Any, Dict, Type, TypeVar, Union

import pydantic
from pydantic_settings import BaseSettings

from .exceptions import ConfigError

SettingsT = TypeVar("SettingsT", bound=BaseSettings)


def read_json_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON object from a configuration file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}", path=str(path))
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}", path=str(path))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}", path=str(path))

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a JSON object", path=str(path))
    return data


def format_validation_error(error: pydantic.ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        problems.append(f"{location}: {item.get('msg')}")
    return "; ".join(problems)


def build_settings(settings_cls: Type[SettingsT], path: Union[str, Path]) -> SettingsT:
    """
    Build a settings model from a JSON file

    Values in the file win over environment variables, which win over
    defaults. Any failure is reported as ConfigError.
    """
    data = read_json_config(path)
    try:
        return settings_cls(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {format_validation_error(e)}", path=str(path)) from e
