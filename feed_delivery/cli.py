import importlib
import json
import sys
import time
from pathlib import Path

import click

from .api import build_services, start_api_server, stop_api_server
from .config import load_config
from .core.errors import ConfigurationError
from .logging_config import configure_logging
from .metrics import start_metrics_server
from .routing import CustomRouteRegistry, InMemoryRouteStore, JsonRouteStore


def load_generator(target: str):
    """Import a content generator given as ``module:attribute``.

    Classes are instantiated without arguments.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise click.BadParameter("expected 'module:attribute'", param_hint="--generator")
    try:
        obj = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise click.BadParameter(str(e), param_hint="--generator")
    if isinstance(obj, type):
        obj = obj()
    if not callable(getattr(obj, "generate", None)):
        raise click.BadParameter(f"{target} has no generate() method", param_hint="--generator")
    return obj


@click.group()
def cli():
    """Feed Delivery CLI"""
    pass


@cli.command()
@click.option(
    "--config", "-c", type=click.Path(exists=True, path_type=Path), help="Path to config file"
)
@click.option("--routes", "-r", type=click.Path(path_type=Path), help="Route definitions JSON file")
@click.option("--generator", "-g", required=True, help="Content generator as module:attribute")
@click.option("--host", default="localhost", help="Address to bind")
@click.option("--port", "-p", type=int, default=8000, help="Port to bind")
@click.option("--log-level", default="INFO", help="Minimum log level")
@click.option("--json-logs/--console-logs", default=True, help="Log output format")
def serve(config, routes, generator, host, port, log_level, json_logs):
    """Serve feeds and the admin API."""
    configure_logging(log_level, json_logs)
    try:
        cfg = load_config(config)
        route_store = JsonRouteStore(routes) if routes else InMemoryRouteStore()
        services = build_services(cfg, load_generator(generator), route_store)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        for problem in e.context.get("problems", []):
            click.echo(f"- {problem}", err=True)
        sys.exit(1)

    if cfg.metrics_port:
        start_metrics_server(cfg.metrics_port)

    click.echo(f"Serving feeds on http://{host}:{port}/feed/")
    start_api_server(services, host=host, port=port)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
    finally:
        stop_api_server()
        services.close()


@cli.command("check-routes")
@click.argument("routes_file", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--config", "-c", type=click.Path(exists=True, path_type=Path), help="Path to config file"
)
def check_routes(routes_file, config):
    """Validate a route definitions file."""
    try:
        cfg = load_config(config)
        snapshot = JsonRouteStore(routes_file).snapshot()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    # Replay every definition into an empty registry so collisions between
    # entries of the file are reported too
    registry = CustomRouteRegistry(InMemoryRouteStore(), allowed_post_types=cfg.allowed_post_types)
    errors = []
    for route in snapshot.routes:
        try:
            registry.add_route(route)
        except ConfigurationError as e:
            errors.append((f"route '{route.slug}'", e.context.get("problems", [str(e)])))
    for rule in snapshot.redirects:
        try:
            registry.add_redirect(rule)
        except ConfigurationError as e:
            errors.append((f"redirect '{rule.from_path}'", e.context.get("problems", [str(e)])))

    if errors:
        for name, problems in errors:
            click.echo(f"Invalid {name}:", err=True)
            for problem in problems:
                click.echo(f"- {problem}", err=True)
        sys.exit(1)

    click.echo(
        f"{len(snapshot.routes)} routes and {len(snapshot.redirects)} redirects are valid"
    )


@cli.command("show-config")
@click.option(
    "--config", "-c", type=click.Path(exists=True, path_type=Path), help="Path to config file"
)
def show_config(config):
    """Print the effective configuration as JSON."""
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        for problem in e.context.get("problems", []):
            click.echo(f"- {problem}", err=True)
        sys.exit(1)
    data = cfg.to_dict()
    if data["admin_token"]:
        data["admin_token"] = "***"
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    cli()
