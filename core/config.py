"""Layered executor configuration (default region, prepend args, allow-list, env)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

import jsonschema
import yaml

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ALLOWED_MATCH_PREFIX = "prefix"
ALLOWED_MATCH_WORD = "word"

CONFIG_JSON_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "title": "aws",
    "type": "object",
    "properties": {
        "defaultRegion": {"type": "string"},
        "prependArgs": {"type": "array", "items": {"type": "string"}},
        "allowed": {"type": "array", "items": {"type": "string"}},
        "allowedMatch": {"type": "string", "enum": [ALLOWED_MATCH_PREFIX, ALLOWED_MATCH_WORD]},
        "env": {"type": "object", "additionalProperties": {"type": "string"}},
    },
    "additionalProperties": False,
}

RawConfig = Union[bytes, str, Mapping[str, Any], None]


@dataclass(frozen=True)
class ExecutorConfig:
    """Merged, read-only configuration for one invocation."""
    default_region: str = ""
    prepend_args: Tuple[str, ...] = ()
    allowed: Tuple[str, ...] = ()
    allowed_match: str = ALLOWED_MATCH_PREFIX
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


def config_schema_json() -> str:
    return json.dumps(CONFIG_JSON_SCHEMA, indent=2)


def _parse_source(raw: RawConfig, index: int) -> Optional[Mapping[str, Any]]:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        data = raw
    else:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
        if not text.strip():
            return None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid executor config #{index}: {e}") from e
    if data is None:
        return None
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"invalid executor config #{index}: expected a mapping")

    try:
        jsonschema.validate(instance=dict(data), schema=CONFIG_JSON_SCHEMA)
    except jsonschema.ValidationError as e:
        path = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"invalid executor config #{index}: {path}: {e.message}") from e
    return data


def merge_configs(sources: Iterable[RawConfig]) -> ExecutorConfig:
    """Merge raw config sources in order.

    Later sources override scalar and list fields when they set a non-empty
    value; ``env`` is merged key by key.
    """
    default_region = ""
    prepend_args: Tuple[str, ...] = ()
    allowed: Tuple[str, ...] = ()
    allowed_match = ALLOWED_MATCH_PREFIX
    env: dict = {}

    for index, raw in enumerate(sources or ()):
        data = _parse_source(raw, index)
        if not data:
            continue
        if data.get("defaultRegion"):
            default_region = str(data["defaultRegion"])
        if data.get("prependArgs"):
            prepend_args = tuple(str(v) for v in data["prependArgs"])
        if data.get("allowed"):
            allowed = tuple(str(v) for v in data["allowed"])
        if data.get("allowedMatch"):
            allowed_match = str(data["allowedMatch"])
        for key, value in (data.get("env") or {}).items():
            env[str(key)] = str(value)

    logger.debug(
        "Merged executor config: region=%s prepend=%d allowed=%d env_keys=%s",
        default_region or "-",
        len(prepend_args),
        len(allowed),
        sorted(env),
    )
    return ExecutorConfig(
        default_region=default_region,
        prepend_args=prepend_args,
        allowed=allowed,
        allowed_match=allowed_match,
        env=MappingProxyType(env),
    )
