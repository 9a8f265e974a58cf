"""Export and import codecs for configuration sets (json, yaml, env)."""

import json
from typing import Any

import yaml

from cloudvault.errors import ValidationError
from cloudvault.models import (
    BulkItem,
    BulkItemError,
    BulkResult,
    Configuration,
    ConfigurationType,
    ExportFormat,
    parse_model,
)

ENV_QUOTE_CHARS = (" ", "\t", "\n", '"', "'", "#")


def flatten(data: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Nested dicts become dot-joined keys; every other value is a leaf."""
    flat: dict[str, Any] = {}
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten(value, full_key))
        else:
            flat[full_key] = value
    return flat


def infer_type(value: Any) -> ConfigurationType:
    if isinstance(value, bool):
        return ConfigurationType.BOOLEAN
    if isinstance(value, (int, float)):
        return ConfigurationType.NUMBER
    if isinstance(value, (dict, list)):
        return ConfigurationType.JSON
    return ConfigurationType.STRING


def _record(config: Configuration) -> dict[str, Any]:
    return {
        "key": config.key,
        "value": config.value,
        "type": config.type.value,
        "is_secret": config.is_secret,
        "description": config.description,
        "tags": dict(config.tags),
    }


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if not isinstance(value, str):
        return json.dumps(value)
    if value == "" or any(c in value for c in ENV_QUOTE_CHARS):
        return json.dumps(value)
    return value


def dump_configurations(configurations: list[Configuration], fmt: ExportFormat) -> str:
    """Serialize configurations whose values are already decrypted or redacted."""
    fmt = ExportFormat(fmt)
    records = [_record(c) for c in configurations]

    if fmt == ExportFormat.JSON:
        return json.dumps(records, indent=2, default=str)
    if fmt == ExportFormat.YAML:
        return yaml.safe_dump(records, default_flow_style=False, sort_keys=False)

    lines = [f"{r['key']}={_env_value(r['value'])}" for r in records]
    return "\n".join(lines) + ("\n" if lines else "")


def _parse_env(data: str) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for lineno, raw in enumerate(data.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise ValidationError.from_messages(
                "Invalid env data", [(f"line {lineno}", f"Expected KEY=value, got '{raw}'")]
            )
        value = value.strip()
        if value.startswith('"'):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise ValidationError.from_messages(
                    "Invalid env data", [(f"line {lineno}", f"Bad quoted value: {e}")]
                ) from e
        elif value.startswith("'") and value.endswith("'") and len(value) >= 2:
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _items_from_mapping(data: dict[str, Any]) -> list[BulkItem]:
    return [
        BulkItem(key=key, value=value, type=infer_type(value).value)
        for key, value in flatten(data).items()
    ]


def _entry_error(key: str, error: ValidationError) -> BulkItemError:
    return BulkItemError(
        key=key,
        code=error.code,
        message=error.message,
        violations=[v.model_dump() for v in error.violations],
    )


def _items_from_list(data: list[Any]) -> BulkResult:
    """Each entry stands alone: a malformed one is reported and the rest still import."""
    result = BulkResult()
    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or "key" not in entry:
            error = ValidationError.from_messages(
                "Invalid import entry", [(f"[{index}]", "Each entry must be a mapping with a 'key'")]
            )
            result.errors.append(_entry_error(f"[{index}]", error))
            continue
        entry = dict(entry)
        if not entry.get("type"):
            entry["type"] = infer_type(entry.get("value")).value
        entry["tags"] = entry.get("tags") or {}
        try:
            result.items.append(parse_model(BulkItem, entry, "Invalid import entry"))
        except ValidationError as e:
            result.errors.append(_entry_error(str(entry["key"]), e))
    return result


def parse_import(fmt: ExportFormat, data: str) -> BulkResult:
    """Turn json, yaml or env text into bulk items.

    A document that cannot be parsed at all raises :class:`ValidationError`;
    entries of a list document that fail on their own land in ``errors``.
    """
    fmt = ExportFormat(fmt)

    if fmt == ExportFormat.ENV:
        return BulkResult(
            items=[BulkItem(key=k, value=v, type="string") for k, v in _parse_env(data).items()]
        )

    try:
        parsed = json.loads(data) if fmt == ExportFormat.JSON else yaml.safe_load(data)
    except (ValueError, yaml.YAMLError) as e:
        raise ValidationError.from_messages(
            f"Invalid {fmt.value} data", [("data", str(e))]
        ) from e

    if parsed is None:
        return BulkResult()
    if isinstance(parsed, list):
        return _items_from_list(parsed)
    if isinstance(parsed, dict):
        return BulkResult(items=_items_from_mapping(parsed))
    raise ValidationError.from_messages(
        f"Invalid {fmt.value} data", [("data", "Expected a list of entries or a mapping")]
    )
