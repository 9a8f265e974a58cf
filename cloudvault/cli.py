import json
import sys
from pathlib import Path
from typing import Any, Optional

import typer
import yaml

from cloudvault.config import ConfigManager
from cloudvault.errors import CloudVaultError, NotFoundError
from cloudvault.models import (
    REDACTED,
    SYSTEM_PRINCIPAL,
    ConfigurationType,
    ExportFormat,
    RotationConfig,
    SecretCreate,
    SecretFilter,
    SecretType,
)
from cloudvault.secrets.service import generate_secret_path
from cloudvault.utils.console import (
    console,
    create_audit_table,
    create_configurations_table,
    create_history_table,
    create_secrets_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from cloudvault.utils.utils import build_engine, get_storage, load_project

app = typer.Typer(
    help="Versioned configuration and secrets management",
    add_completion=False,
)
config_app = typer.Typer(help="Typed, versioned configuration values")
template_app = typer.Typer(help="Schema-driven configuration templates")
secret_app = typer.Typer(help="Secrets stored in the external backend")
app.add_typer(config_app, name="config")
app.add_typer(template_app, name="template")
app.add_typer(secret_app, name="secret")

ENV_OPTION = typer.Option(None, "--env", "-e", help="Environment id (defaults to the configured environment)")
PRINCIPAL_OPTION = typer.Option(
    SYSTEM_PRINCIPAL, "--principal", "-p", envvar="CLOUDVAULT_PRINCIPAL", help="Acting principal"
)


def _fail(action: str, error: Exception) -> None:
    print_error(f"Failed to {action}: {error}")
    sys.exit(1)


def _parse_tags(tags: Optional[list[str]]) -> dict[str, str]:
    parsed = {}
    for tag in tags or []:
        key, sep, value = tag.partition("=")
        if not sep:
            print_error(f"Invalid tag '{tag}'. Use key=value")
            sys.exit(1)
        parsed[key] = value
    return parsed


def _parse_value(raw: str, type_: str) -> Any:
    """Turn CLI text into a typed value; anything unparseable is left for the validator."""
    if type_ in (ConfigurationType.NUMBER.value, ConfigurationType.BOOLEAN.value):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def _parse_overrides(pairs: Optional[list[str]]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep:
            print_error(f"Invalid override '{pair}'. Use key=value")
            sys.exit(1)
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw

        target = overrides
        parts = key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return overrides


def _read_document(path: str) -> Any:
    with open(path, "r") as f:
        return yaml.safe_load(f)


def _env(vault, environment: Optional[str]) -> str:
    return environment or vault.config.environment


@app.command()
def init() -> None:
    config_manager = ConfigManager()

    if config_manager.is_initialized():
        print_warning(f"Already initialized in {config_manager.config_dir}")
        return

    try:
        config_manager.initialize()
        config_manager, config = load_project(config_manager)
        get_storage(config_manager, config).close()

        print_success(f"Initialized cloudvault in {config_manager.config_dir}")
        print_info(f"Storage: {config_manager.get_storage_path(config)}")
        print_info(f"Audit log: {config_manager.get_audit_path(config)}")
        print_info(f"Backend: {config.vault.endpoint}")

    except (CloudVaultError, OSError) as e:
        _fail("initialize", e)


# configurations


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Configuration key (e.g., DATABASE_URL)"),
    value: str = typer.Argument(..., help="Value"),
    type_: str = typer.Option("string", "--type", "-t", help="string, number, boolean, json, yaml or env"),
    secret: bool = typer.Option(False, "--secret", help="Encrypt the value at rest"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Tag as key=value"),
    message: Optional[str] = typer.Option(None, "--message", "-m", help="Change description"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            existing = vault.configurations.get_by_key(env, key)
            if existing:
                config = vault.configurations.update(
                    existing.id,
                    {"value": _parse_value(value, existing.type.value), "change_description": message},
                    updated_by=principal,
                )
            else:
                config = vault.configurations.create(
                    {
                        "environment_id": env,
                        "name": key,
                        "key": key,
                        "value": _parse_value(value, type_),
                        "type": type_,
                        "is_secret": secret,
                        "description": description,
                        "tags": _parse_tags(tag),
                        "created_by": principal,
                    },
                    change_description=message,
                )
        finally:
            vault.close()

        if json_output:
            output = config.model_dump(mode="json")
            if config.is_secret:
                output["value"] = REDACTED
            console.print_json(data=output)
        else:
            print_success(f"Set {key} in {env} (version {config.version})")

    except CloudVaultError as e:
        _fail("set configuration", e)


@config_app.command("get")
def config_get(
    key: str = typer.Argument(..., help="Configuration key"),
    environment: Optional[str] = ENV_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only output the value"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            config = vault.configurations.get_by_key(env, key)
        finally:
            vault.close()

        if not config:
            print_error(f"Configuration not found: {key} in {env}")
            sys.exit(1)

        value = config.value if isinstance(config.value, str) else json.dumps(config.value)
        if quiet:
            print(value)
        elif json_output:
            console.print_json(data=config.model_dump(mode="json"))
        else:
            console.print(value)

    except CloudVaultError as e:
        _fail("get configuration", e)


@config_app.command("list")
def config_list(
    environment: Optional[str] = ENV_OPTION,
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match name, key or description"),
    show_values: bool = typer.Option(False, "--show-values", help="Show secret values"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            configs = vault.configurations.get_environment_configurations(env, include_secrets=show_values)
            if search:
                keys = {c.id for c in vault.configurations.search(search)}
                configs = [c for c in configs if c.id in keys]
        finally:
            vault.close()

        if not configs:
            print_info("No configurations found")
            return

        if json_output:
            console.print_json(data=[c.model_dump(mode="json") for c in configs])
        else:
            console.print(create_configurations_table(configs))
            console.print(f"\n[dim]Total: {len(configs)} configuration(s)[/dim]")

    except CloudVaultError as e:
        _fail("list configurations", e)


@config_app.command("history")
def config_history(
    key: str = typer.Argument(..., help="Configuration key"),
    environment: Optional[str] = ENV_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            config = vault.configurations.get_by_key(env, key)
            if not config:
                raise NotFoundError(f"Configuration not found: {key} in {env}")
            versions = vault.configurations.get_versions(config.id)
        finally:
            vault.close()

        if json_output:
            console.print_json(data=[v.model_dump(mode="json") for v in versions])
        else:
            console.print(f"\n[bold]History for {key}[/bold]\n")
            console.print(create_history_table(versions))

    except CloudVaultError as e:
        _fail("get history", e)


@config_app.command("rollback")
def config_rollback(
    key: str = typer.Argument(..., help="Configuration key"),
    version: int = typer.Argument(..., help="Version number to roll back to"),
    reason: str = typer.Option("", "--reason", "-r"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            config = vault.configurations.get_by_key(env, key)
            if not config:
                raise NotFoundError(f"Configuration not found: {key} in {env}")

            if not force and not typer.confirm(f"Rollback {key} to version {version}?"):
                print_info("Cancelled")
                return

            config = vault.configurations.rollback(
                {
                    "configuration_id": config.id,
                    "target_version": version,
                    "reason": reason,
                    "created_by": principal,
                }
            )
        finally:
            vault.close()

        print_success(f"Rolled back {key} to version {version} (now version {config.version})")

    except CloudVaultError as e:
        _fail("rollback", e)


@config_app.command("delete")
def config_delete(
    key: str = typer.Argument(..., help="Configuration key"),
    environment: Optional[str] = ENV_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            config = vault.configurations.get_by_key(env, key)
            if not config:
                raise NotFoundError(f"Configuration not found: {key} in {env}")

            if not force and not typer.confirm(f"Delete {key}?"):
                print_info("Cancelled")
                return

            vault.configurations.delete(config.id)
        finally:
            vault.close()

        print_success(f"Deleted {key}")

    except CloudVaultError as e:
        _fail("delete configuration", e)


@config_app.command("export")
def config_export(
    environment: Optional[str] = ENV_OPTION,
    fmt: ExportFormat = typer.Option(ExportFormat.JSON, "--format", help="json, yaml or env"),
    include_secrets: bool = typer.Option(False, "--include-secrets", help="Write secret values in clear"),
    output_file: Optional[str] = typer.Option(None, "--output", "-o", help="Output file path"),
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            content = vault.configurations.export(
                {"environment_id": env, "format": fmt, "include_secrets": include_secrets}
            )
        finally:
            vault.close()

        if output_file:
            Path(output_file).write_text(content)
            print_success(f"Exported {env} to {output_file}")
        else:
            print(content)

    except (CloudVaultError, OSError) as e:
        _fail("export configurations", e)


@config_app.command("import")
def config_import(
    input_file: str = typer.Argument(..., help="File to import"),
    environment: Optional[str] = ENV_OPTION,
    fmt: Optional[ExportFormat] = typer.Option(None, "--format", help="json, yaml or env (default: from extension)"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Update keys that already exist"),
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        data = Path(input_file).read_text()
        if fmt is None:
            suffix = Path(input_file).suffix.lstrip(".").lower()
            fmt = {"yml": ExportFormat.YAML, "yaml": ExportFormat.YAML, "env": ExportFormat.ENV}.get(
                suffix, ExportFormat.JSON
            )

        vault = build_engine()
        try:
            env = _env(vault, environment)
            result = vault.configurations.import_configurations(
                {
                    "environment_id": env,
                    "format": fmt,
                    "data": data,
                    "overwrite_existing": overwrite,
                    "created_by": principal,
                }
            )
        finally:
            vault.close()

        for error in result.errors:
            print_warning(f"{error.key}: {error.message}")
        print_success(f"Imported {len(result.items)} configuration(s) into {env}")
        if not result.ok:
            sys.exit(1)

    except (CloudVaultError, OSError) as e:
        _fail("import configurations", e)


# templates


@template_app.command("create")
def template_create(
    name: str = typer.Argument(..., help="Template name"),
    schema_file: str = typer.Argument(..., help="JSON or YAML file with the JSON schema"),
    defaults_file: Optional[str] = typer.Option(None, "--defaults", help="JSON or YAML default values"),
    description: str = typer.Option("", "--description", "-d"),
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        schema = _read_document(schema_file)
        defaults = _read_document(defaults_file) if defaults_file else {}

        vault = build_engine()
        try:
            template = vault.templates.create_template(
                {
                    "name": name,
                    "description": description,
                    "schema_definition": schema,
                    "default_values": defaults or {},
                    "created_by": principal,
                }
            )
        finally:
            vault.close()

        print_success(f"Created template {template.name}")

    except (CloudVaultError, OSError, yaml.YAMLError) as e:
        _fail("create template", e)


@template_app.command("list")
def template_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            templates = vault.templates.list_templates()
        finally:
            vault.close()

        if not templates:
            print_info("No templates found")
            return

        if json_output:
            console.print_json(data=[t.model_dump(mode="json") for t in templates])
        else:
            for template in templates:
                props = ", ".join(template.schema_definition.get("properties", {}))
                console.print(f"[cyan]{template.name}[/cyan] {template.description} [dim]({props})[/dim]")

    except CloudVaultError as e:
        _fail("list templates", e)


@template_app.command("apply")
def template_apply(
    name: str = typer.Argument(..., help="Template name"),
    environment: Optional[str] = ENV_OPTION,
    override: Optional[list[str]] = typer.Option(None, "--set", help="Override as key=value (dots nest)"),
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        vault = build_engine()
        try:
            env = _env(vault, environment)
            template = vault.templates.get_template_by_name(name)
            if not template:
                raise NotFoundError(f"Template not found: {name}")
            result = vault.templates.apply_template(
                template.id, env, _parse_overrides(override), created_by=principal
            )
        finally:
            vault.close()

        for error in result.errors:
            print_warning(f"{error.key}: {error.message}")
        print_success(f"Applied {name} to {env}: {len(result.items)} configuration(s) created")
        if not result.ok:
            sys.exit(1)

    except CloudVaultError as e:
        _fail("apply template", e)


# secrets


def _find_secret(vault, environment: Optional[str], name: str):
    path = generate_secret_path(_env(vault, environment), name)
    secret = vault.secrets.get_secret_by_path(path)
    if not secret:
        raise NotFoundError(f"Secret not found: {path}")
    return secret


@secret_app.command("create")
def secret_create(
    name: str = typer.Argument(..., help="Secret name"),
    secret_type: SecretType = typer.Option(SecretType.CUSTOM, "--type", "-t"),
    value: Optional[str] = typer.Option(None, "--value", help="Initial value"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Tag as key=value"),
    rotation: Optional[str] = typer.Option(None, "--rotation", help="Rotation type, e.g. password or api_key"),
    interval: float = typer.Option(30, "--interval", help="Days between rotations"),
    auto_rotate: bool = typer.Option(False, "--auto-rotate", help="Rotate on a timer"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        with build_engine() as vault:
            rotation_config = None
            if rotation:
                rotation_config = RotationConfig(
                    enabled=True, auto_rotate=auto_rotate, type=rotation, interval=interval
                )
            secret = vault.secrets.create_secret(
                SecretCreate(
                    name=name,
                    environment_id=_env(vault, environment),
                    type=secret_type,
                    description=description,
                    rotation_config=rotation_config,
                    tags=_parse_tags(tag),
                    created_by=principal,
                )
            )
            if value is not None:
                vault.secrets.set_secret_value(secret.id, value, principal_id=principal)

        print_success(f"Created secret {name} at {secret.path}")

    except CloudVaultError as e:
        _fail("create secret", e)


@secret_app.command("list")
def secret_list(
    environment: Optional[str] = ENV_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            secrets = vault.secrets.list_secrets(SecretFilter(environment_id=_env(vault, environment)))
        finally:
            vault.close()

        if not secrets:
            print_info("No secrets found")
            return

        if json_output:
            console.print_json(data=[s.model_dump(mode="json") for s in secrets])
        else:
            console.print(create_secrets_table(secrets))
            console.print(f"\n[dim]Total: {len(secrets)} secret(s)[/dim]")

    except CloudVaultError as e:
        _fail("list secrets", e)


@secret_app.command("set")
def secret_set(
    name: str = typer.Argument(..., help="Secret name"),
    value: str = typer.Argument(..., help="New value"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        with build_engine() as vault:
            secret = _find_secret(vault, environment, name)
            version = vault.secrets.set_secret_value(secret.id, value, principal_id=principal)

        print_success(f"Set {name} (version {version.version})")

    except CloudVaultError as e:
        _fail("set secret", e)


@secret_app.command("get")
def secret_get(
    name: str = typer.Argument(..., help="Secret name"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        with build_engine() as vault:
            secret = _find_secret(vault, environment, name)
            value = vault.secrets.get_secret_value(secret.id, principal_id=principal)

        print(value)

    except CloudVaultError as e:
        _fail("get secret", e)


@secret_app.command("rotate")
def secret_rotate(
    name: str = typer.Argument(..., help="Secret name"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
) -> None:
    try:
        with build_engine() as vault:
            secret = _find_secret(vault, environment, name)
            rotated = vault.secrets.rotate_secret(secret.id, principal_id=principal)

        print_success(f"Rotated {name} (version {rotated.version})")

    except CloudVaultError as e:
        _fail("rotate secret", e)


@secret_app.command("rollback")
def secret_rollback(
    name: str = typer.Argument(..., help="Secret name"),
    version: int = typer.Argument(..., help="Version number to roll back to"),
    reason: str = typer.Option("", "--reason", "-r"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    if not force and not typer.confirm(f"Rollback {name} to version {version}?"):
        print_info("Cancelled")
        return

    try:
        with build_engine() as vault:
            secret = _find_secret(vault, environment, name)
            secret = vault.secrets.rollback_secret(secret.id, version, reason, principal_id=principal)

        print_success(f"Rolled back {name} to version {version} (now version {secret.version})")

    except CloudVaultError as e:
        _fail("rollback secret", e)


@secret_app.command("delete")
def secret_delete(
    name: str = typer.Argument(..., help="Secret name"),
    environment: Optional[str] = ENV_OPTION,
    principal: str = PRINCIPAL_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    if not force and not typer.confirm(f"Delete secret {name}?"):
        print_info("Cancelled")
        return

    try:
        with build_engine() as vault:
            secret = _find_secret(vault, environment, name)
            vault.secrets.delete_secret(secret.id, principal_id=principal)

        print_success(f"Deleted secret {name}")

    except CloudVaultError as e:
        _fail("delete secret", e)


@secret_app.command("audit")
def secret_audit(
    name: str = typer.Argument(..., help="Secret name"),
    limit: int = typer.Option(50, "--limit", "-n"),
    environment: Optional[str] = ENV_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    try:
        vault = build_engine()
        try:
            secret = _find_secret(vault, environment, name)
            entries = vault.secrets.get_audit_logs(secret.id, limit)
        finally:
            vault.close()

        if json_output:
            console.print_json(data=[e.model_dump(mode="json") for e in entries])
        else:
            console.print(create_audit_table(entries))

    except CloudVaultError as e:
        _fail("read audit log", e)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
