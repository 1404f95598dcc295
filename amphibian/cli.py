"""Amphibian CLI entry point.

Provides command-line access to pool hosting and joining, share codes,
the local identity and the persisted memory graph.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer
from typing_extensions import Annotated

from amphibian.config import AmphibianConfig, get_config
from amphibian.errors import AmphibianError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create CLI app
app = typer.Typer(
    name="amphibian",
    help="Amphibian - associative memory and collective inference for on-device agents",
    add_completion=False,
)
share_code_app = typer.Typer(help="Generate and inspect pool share codes")
identity_app = typer.Typer(help="Manage the local collective identity")
memory_app = typer.Typer(help="Inspect the persisted memory graph")
app.add_typer(share_code_app, name="share-code")
app.add_typer(identity_app, name="identity")
app.add_typer(memory_app, name="memory")

ConfigOption = Annotated[str, typer.Option("--config", "-c", help="Path to YAML configuration file")]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose output")]


def _load_config(config: str, verbose: bool = False) -> AmphibianConfig:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if config and not Path(config).exists():
        typer.echo(f"❌ Configuration file not found: {config}", err=True)
        raise typer.Exit(code=1)

    return get_config(config or None)


def _fail(error: AmphibianError) -> typer.Exit:
    typer.echo(f"❌ {error.message}", err=True)
    return typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show Amphibian version information."""
    try:
        import importlib.metadata

        ver = importlib.metadata.version("amphibian")
    except importlib.metadata.PackageNotFoundError:
        from amphibian import __version__ as ver
    typer.echo(f"Amphibian version: {ver}")


@app.command()
def info() -> None:
    """Show Amphibian system information."""
    typer.echo("Amphibian - Collective Inference Fabric")
    typer.echo("")
    typer.echo("Components:")
    typer.echo("  - memory: typed associative graph with co-occurrence promotion")
    typer.echo("  - collective: pool coordinator and workers over newline-delimited JSON")
    typer.echo("  - routing: local classification with keyword fallback")
    typer.echo("")
    typer.echo("Capability classes: low (2), medium (16), high (32), tpu (64 tokens per chunk)")


# ---------------------------------------------------------------------------
# share-code
# ---------------------------------------------------------------------------


@share_code_app.command("generate")
def share_code_generate(
    host: Annotated[str, typer.Argument(help="Coordinator host or IP")],
    port: Annotated[int, typer.Argument(help="Coordinator port")] = 8766,
    secret: Annotated[str, typer.Option("--secret", "-s", help="Pool secret (random if omitted)")] = "",
) -> None:
    """Encode a host, port and secret into a share code."""
    from amphibian.collective.share_code import generate_secret, generate_share_code

    try:
        code = generate_share_code(host, port, secret or generate_secret())
    except AmphibianError as e:
        raise _fail(e) from e
    typer.echo(code)


@share_code_app.command("parse")
def share_code_parse(code: Annotated[str, typer.Argument(help="Share code to decode")]) -> None:
    """Decode a share code."""
    from amphibian.collective.share_code import parse_share_code

    parsed = parse_share_code(code)
    if parsed is None:
        typer.echo("❌ Invalid share code", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(parsed._asdict()))


# ---------------------------------------------------------------------------
# identity
# ---------------------------------------------------------------------------


@identity_app.command("create")
def identity_create(
    name: Annotated[str, typer.Option("--name", "-n", help="Display name")] = "",
    force: Annotated[bool, typer.Option("--force", help="Replace an existing identity")] = False,
    config: ConfigOption = "",
) -> None:
    """Create the local identity."""
    from amphibian.collective.identity import IdentityManager

    settings = _load_config(config)
    path = settings.resolver().get_identity_path()
    if path.exists() and not force:
        typer.echo(f"❌ Identity already exists at {path} (use --force to replace)", err=True)
        raise typer.Exit(code=1)

    manager = IdentityManager()
    identity = manager.create_identity(name)
    asyncio.run(manager.save(path))
    typer.echo(f"Created identity {identity.display_name} ({identity.id})")


@identity_app.command("show")
def identity_show(config: ConfigOption = "") -> None:
    """Show the public profile of the local identity."""
    from amphibian.collective.identity import IdentityManager

    settings = _load_config(config)
    identity = asyncio.run(IdentityManager().load(settings.resolver().get_identity_path()))
    if identity is None:
        typer.echo("❌ No identity found; run `amphibian identity create`", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(identity.to_public_profile(), indent=2))


# ---------------------------------------------------------------------------
# memory
# ---------------------------------------------------------------------------


@memory_app.command("stats")
def memory_stats(config: ConfigOption = "") -> None:
    """Show memory graph and co-occurrence statistics."""
    from amphibian.memory.cooccurrence import CooccurrenceTracker
    from amphibian.memory.storage import MemoryStorage

    settings = _load_config(config)
    resolver = settings.resolver()

    async def collect() -> dict:
        graph = await MemoryStorage(resolver.get_graph_path()).load()
        tracker = CooccurrenceTracker(graph, resolver.get_provenance_path(), settings.memory)
        await tracker.load()
        return {"graph": graph.get_statistics(), "cooccurrence": tracker.get_statistics()}

    typer.echo(json.dumps(asyncio.run(collect()), indent=2))


# ---------------------------------------------------------------------------
# host / join
# ---------------------------------------------------------------------------


@app.command()
def host(
    bind: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 0,
    advertise: Annotated[str, typer.Option("--advertise", help="Address placed in the share code")] = "",
    metrics_port: Annotated[int, typer.Option("--metrics-port", help="Expose Prometheus metrics")] = 0,
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Host a collective pool and print its share code.

    Examples:
        # Host on the configured address (default 0.0.0.0:8766)
        amphibian host

        # Host on a custom port and export metrics
        amphibian host --port 9000 --metrics-port 9100
    """
    settings = _load_config(config, verbose)

    from amphibian.main import AmphibianApplication
    from amphibian.monitoring.metrics import start_metrics_server
    from amphibian.observability import setup_telemetry, shutdown_telemetry

    if settings.telemetry.enabled:
        setup_telemetry(
            service_name=settings.telemetry.service_name,
            environment=settings.environment,
            otlp_endpoint=settings.telemetry.otlp_endpoint,
            enable_console_export=settings.telemetry.enable_console_export,
            sample_rate=settings.telemetry.sample_rate,
        )
    if metrics_port:
        start_metrics_server(metrics_port)

    async def run() -> None:
        application = AmphibianApplication(settings)
        await application.initialize()
        try:
            coordinator = await application.start_host(bind or None, port or None)
            typer.echo(f"Share code: {coordinator.share_code(advertise or None)}")
            await application.start()
        finally:
            await application.stop()

    try:
        asyncio.run(run())
    except AmphibianError as e:
        raise _fail(e) from e
    finally:
        if settings.telemetry.enabled:
            shutdown_telemetry()


@app.command()
def join(
    code: Annotated[str, typer.Argument(help="Share code printed by `amphibian host`")],
    capability: Annotated[
        str, typer.Option("--capability", help="Capability class (low|medium|high|tpu), detected if omitted")
    ] = "",
    name: Annotated[str, typer.Option("--name", "-n", help="Device name shown to the pool")] = "",
    config: ConfigOption = "",
    verbose: VerboseOption = False,
) -> None:
    """Join a collective and serve chunks from the local engine."""
    settings = _load_config(config, verbose)

    valid = ("low", "medium", "high", "tpu")
    if capability and capability not in valid:
        typer.echo(f"❌ Invalid capability: {capability}", err=True)
        typer.echo(f"   Valid classes: {', '.join(valid)}", err=True)
        raise typer.Exit(code=1)

    from amphibian.collective.identity import IdentityManager
    from amphibian.collective.worker import PoolWorker
    from amphibian.engines.ollama import OllamaEngine

    async def run() -> None:
        manager = IdentityManager(challenge_ttl_ms=settings.pool.challenge_ttl_ms)
        identity = await manager.load_or_create(settings.resolver().get_identity_path())
        engine = OllamaEngine(settings.engine_url, settings.engine_model)
        worker = PoolWorker(
            engine,
            identity,
            settings.pool,
            capability=capability or None,
            device_name=name,
        )
        try:
            joined = await worker.connect(code)
            typer.echo(f"Joined {joined['pool_name']} as {joined['device_id']} ({worker.capability.value})")
            await worker.run()
        finally:
            await engine.aclose()

    try:
        asyncio.run(run())
    except AmphibianError as e:
        raise _fail(e) from e
    except KeyboardInterrupt:
        logger.info("Worker interrupted")


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
