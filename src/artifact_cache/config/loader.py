from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Type

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

from artifact_cache.config.models import AppConfig, ConfigLoadRequest

_SEGMENT_SEPARATOR = "__"


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Config file not found: {path}") from e

    loaded = yaml.safe_load(text)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(
            f"Config file must contain a mapping at the top level. path={path} type={type(loaded).__name__}"
        )
    return loaded


def _override_key_path(name: str, prefix: str, schema: Type[BaseModel]) -> List[str]:
    """
    Turn ``PREFIX__SECTION__KEY`` into ``["section", "key"]``.

    Each segment must name a field of the settings schema, and every segment but
    the last must name a nested settings model.
    """
    segments = [s.lower() for s in name[len(prefix) :].split(_SEGMENT_SEPARATOR) if s]
    if not segments:
        raise ValueError(f"Environment override names no configuration key: {name}")

    model: Any = schema
    for depth, segment in enumerate(segments):
        if not (isinstance(model, type) and issubclass(model, BaseModel)):
            raise TypeError(f"Environment override descends into a plain value: {name}")
        field = model.model_fields.get(segment)
        if field is None:
            raise KeyError(f"Environment override names an unknown configuration key: {name}")
        model = field.annotation if depth < len(segments) - 1 else None
    return segments


def _with_env_overrides(config: Dict[str, Any], environ: Mapping[str, str], prefix: str) -> Dict[str, Any]:
    for name in sorted(environ):
        if not name.startswith(prefix):
            continue
        *parents, leaf = _override_key_path(name, prefix, AppConfig)
        section = config
        for segment in parents:
            section = section.setdefault(segment, {})
            if not isinstance(section, dict):
                raise TypeError(f"Environment override descends into a plain value: {name}")
        # Strings are coerced by the pydantic models.
        section[leaf] = environ[name]
    return config


class YamlConfigLoader:
    """Reads the YAML config file, then applies ``.env`` and environment overrides."""

    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        config = _load_yaml_mapping(Path(request.yaml_path))
        if request.dotenv_path is not None and Path(request.dotenv_path).is_file():
            load_dotenv(dotenv_path=request.dotenv_path, override=False)
        return AppConfig.model_validate(_with_env_overrides(config, os.environ, request.env_prefix))
