"""Configuration command for the lessonup CLI.

Commands:
- configure: Store the backend URL, token and resumable endpoint
"""

from __future__ import annotations

import click

from lessonup.client.cli.config import get_config_file, load_config, save_config


@click.command()
@click.option(
    "--api-url",
    required=True,
    help="Backend functions URL (e.g., https://api.example.com).",
)
@click.option(
    "--token",
    required=True,
    help="Bearer token for the backend.",
)
@click.option(
    "--endpoint",
    default=None,
    help="Resumable upload endpoint used when the backend does not issue one.",
)
def configure(api_url: str, token: str, endpoint: str | None) -> None:
    """Save the backend connection settings."""
    if not api_url.startswith(("http://", "https://")):
        raise click.BadParameter("must start with http:// or https://", param_hint="--api-url")

    config = load_config()
    config["api_url"] = api_url.rstrip("/")
    config["token"] = token
    if endpoint:
        config["endpoint"] = endpoint
    save_config(config)

    click.echo(f"Configuration saved to {get_config_file()}")
    if not api_url.startswith("https://"):
        click.echo("Warning: the backend URL is not using HTTPS.", err=True)
