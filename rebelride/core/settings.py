"""Loading, validation and saving of persisted rebelride settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from rebelride.core.address import is_valid_address
from rebelride.core.errors import SettingsLoadError, SettingsValidationError
from rebelride.core.model import Settings

LOGGER = logging.getLogger(__name__)
SETTINGS_FILE = "settings.yaml"


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate keys and keeps passwords as text."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

# PINs such as 0123 must not be read as integers or booleans.
for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag not in {"tag:yaml.org,2002:bool", "tag:yaml.org,2002:int"}
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise SettingsValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def _load_schema_validator() -> Any:
    schema_text = resources.files("rebelride.schemas").joinpath("settings.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def settings_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "rebelride" / SETTINGS_FILE


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsLoadError(f"Could not read settings file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise SettingsValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise SettingsValidationError(f"Settings file {path} must contain a mapping at root")
    return loaded


def _normalize_timeout(value: Any, *, context: str) -> float:
    if isinstance(value, bool):
        raise SettingsValidationError(f"{context} must be a number of seconds")
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise SettingsValidationError(f"{context} must be a number of seconds") from exc
    if timeout <= 0:
        raise SettingsValidationError(f"{context} must be greater than zero")
    return timeout


def _normalize_address(value: str, *, context: str) -> str:
    normalized = value.strip().upper()
    if not is_valid_address(normalized):
        raise SettingsValidationError(f"{context} must look like AA:BB:CC:DD:EE:FF")
    return normalized


def _build_settings(doc: dict[str, Any], source: Path) -> Settings:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise SettingsValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    defaults = Settings()
    address = doc.get("address")
    password = doc.get("password")
    return Settings(
        address=_normalize_address(address, context="address") if address else None,
        password=password or None,
        connect_timeout_s=_normalize_timeout(
            doc.get("connect_timeout_s", defaults.connect_timeout_s),
            context="connect_timeout_s",
        ),
        reply_timeout_s=_normalize_timeout(
            doc.get("reply_timeout_s", defaults.reply_timeout_s),
            context="reply_timeout_s",
        ),
        scan_timeout_s=_normalize_timeout(
            doc.get("scan_timeout_s", defaults.scan_timeout_s),
            context="scan_timeout_s",
        ),
    )


def load_settings(path: Path | None = None) -> Settings:
    path = path or settings_path()
    if not path.exists():
        LOGGER.debug("No settings file at %s; using defaults", path)
        return Settings()
    return _build_settings(_read_yaml(path), path)


def save_settings(settings: Settings, path: Path | None = None) -> Path:
    path = path or settings_path()
    doc = {key: value for key, value in asdict(settings).items() if value is not None}
    # Round-trip through the validator so a bad value never reaches disk.
    _build_settings(doc, path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(doc, sort_keys=True), encoding="utf-8")
    except OSError as exc:
        raise SettingsLoadError(f"Could not write settings file {path}: {exc}") from exc
    LOGGER.debug("Saved settings to %s", path)
    return path
