#!/usr/bin/env python3
"""
Gatekeeper command-line tools.

Key generation, password hashing, masking and configuration checks, plus
``serve`` to run the protected HTTP application under uvicorn.
"""

import json
import sys
from pathlib import Path

import click
import uvicorn
from rich.console import Console
from rich.table import Table

from ..config import GatekeeperConfig
from ..security.crypto import CryptoManager, EncryptedPayload, generate_master_key
from ..security.masking import MASKING_RULES, MaskingPolicy, mask_sensitive_data
from ..util.errors import CryptoError
from ..util.log import setup_logging

console = Console()


def _load_config(config_file: Path | None) -> GatekeeperConfig:
    if config_file:
        return GatekeeperConfig.load_from_file(config_file)
    return GatekeeperConfig.load_from_env()


@click.group()
def cli():
    """Gatekeeper API boundary protection tools."""
    pass


@cli.command("generate-key")
def generate_key():
    """Print a new base64 encoded 256-bit master key."""
    click.echo(generate_master_key())


@cli.command("hash-password")
@click.password_option("--password", prompt="Password", help="Password to hash")
def hash_password(password: str):
    """Hash a password with scrypt."""
    click.echo(CryptoManager().hash_password(password))


@cli.command()
@click.argument("value")
@click.option(
    "--kind",
    "-k",
    type=click.Choice(sorted(MASKING_RULES) + ["default"]),
    default="default",
    help="Data category",
)
@click.option("--mask-two-char-names", is_flag=True, help="Mask the second character of two-character names")
def mask(value: str, kind: str, mask_two_char_names: bool):
    """Mask a personal data value for display."""
    policy = MaskingPolicy(mask_two_char_names=mask_two_char_names)
    click.echo(mask_sensitive_data(value, kind, policy))


@cli.command()
@click.argument("plaintext")
@click.option("--config", "config_file", type=click.Path(path_type=Path), help="Configuration file")
def encrypt(plaintext: str, config_file: Path | None):
    """Encrypt PLAINTEXT with the configured master key."""
    config = _load_config(config_file)
    try:
        payload = CryptoManager.from_config(config.security).encrypt(plaintext)
    except CryptoError as e:
        console.print(f"[bold red]❌ {e.message}[/bold red]")
        sys.exit(1)
    click.echo(json.dumps(payload.to_dict()))


@cli.command()
@click.argument("payload")
@click.option("--config", "config_file", type=click.Path(path_type=Path), help="Configuration file")
def decrypt(payload: str, config_file: Path | None):
    """Decrypt a JSON PAYLOAD produced by ``encrypt``."""
    config = _load_config(config_file)
    try:
        data = EncryptedPayload.from_dict(json.loads(payload))
        click.echo(CryptoManager.from_config(config.security).decrypt_text(data))
    except json.JSONDecodeError:
        console.print("[bold red]❌ Payload is not valid JSON[/bold red]")
        sys.exit(1)
    except CryptoError as e:
        console.print(f"[bold red]❌ {e.message}[/bold red]")
        sys.exit(1)


@cli.command("check-config")
@click.option("--config", "config_file", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--json-output", is_flag=True, help="Output results as JSON")
def check_config(config_file: Path | None, json_output: bool):
    """Validate the effective configuration."""
    config = _load_config(config_file)
    problems = config.validate()

    if json_output:
        print(json.dumps({"valid": not problems, "problems": problems, "config": config.to_dict()}, indent=2))
        sys.exit(1 if problems else 0)

    security = config.security
    table = Table(title="Security Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Threat detection", str(security.enable_threat_detection))
    table.add_row("Rate limiting", str(security.enable_rate_limiting))
    table.add_row("Allow list", ", ".join(security.ip_whitelist) if security.enable_ip_whitelist else "disabled")
    table.add_row("Trust proxy", str(security.trust_proxy))
    table.add_row("Max content length", str(security.max_content_length))
    table.add_row("Alerts", str(security.enable_alerts))
    table.add_row("Audit log", str(security.audit_log_file or "-"))
    table.add_row("Admin API keys", str(len(security.admin_api_keys)))
    console.print(table)

    if problems:
        console.print("[yellow]⚠️  Problems:[/yellow]")
        for problem in problems:
            console.print(f"  • {problem}")
        sys.exit(1)

    console.print("✅ [bold green]Configuration is valid[/bold green]")


@cli.command()
@click.option("--config", "config_file", type=click.Path(path_type=Path), help="Configuration file")
@click.option("--host", default=None, help="Override bind address")
@click.option("--port", type=int, default=None, help="Override bind port")
def serve(config_file: Path | None, host: str | None, port: int | None):
    """Run the protected application under uvicorn."""
    from ..http.app import create_app

    config = _load_config(config_file)
    setup_logging(config.logging.log_level, config.logging.log_format)

    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.logging.log_level.lower(),
        proxy_headers=config.server.behind_proxy,
    )


def main():
    cli()


if __name__ == "__main__":
    main()
