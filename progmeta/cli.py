"""
CLI interface for progmeta.

Provides commands to run the build service and to talk to a running one.

Service:
    progmeta init       write a default config.yaml
    progmeta serve      run the HTTP service and build worker

Client (against --server, default $PROGMETA_SERVICE_ENDPOINT or localhost:3000):
    progmeta build GIT_URL
    progmeta build-tar PATH
    progmeta list
    progmeta program HASH
"""

import io
import json
import sys
import tarfile
from pathlib import Path
from typing import Optional

import click

from progmeta import __version__
from progmeta.client import DEFAULT_ENDPOINT, ENDPOINT_ENV_VAR
from progmeta.schemas import BuildEvent, BuildFailure, BuildSuccess, StdErrChunk, StdOutChunk


@click.group()
@click.version_option(version=__version__, prog_name="progmeta")
@click.option(
    "--server",
    "-s",
    envvar=ENDPOINT_ENV_VAR,
    default=DEFAULT_ENDPOINT,
    show_default=True,
    help="progmeta service endpoint for client commands",
)
@click.pass_context
def main(ctx, server: str):
    """
    progmeta - Build programs and serve their metadata by content hash.
    """
    from progmeta.config import load_config

    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # Client commands and init work without a config file; serve checks for it
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize progmeta configuration."""
    import yaml

    from progmeta.config import ProgmetaConfig, get_progmeta_home

    home = get_progmeta_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(ProgmetaConfig().to_dict(), sort_keys=False))
    click.echo(f"Initialized progmeta config at {cfg_path}")


@main.command("serve")
@click.option("--host", default=None, help="Interface to bind (overrides config)")
@click.option("--port", type=int, default=None, help="Port to listen on (overrides config)")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Run the HTTP service and the build worker."""
    from progmeta.invoker import BuildInvoker
    from progmeta.materializer import SourceMaterializer
    from progmeta.orchestrator import BuildOrchestrator
    from progmeta.pipeline import BuildPipeline
    from progmeta.server import create_app
    from progmeta.store import open_store
    from progmeta.utils import setup_logging

    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'progmeta init' to create a configuration file.", err=True)
        raise SystemExit(1)

    config = ctx.obj["config"]
    logger = setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
    )

    store = open_store(config.resolved_db_path())
    pipeline = BuildPipeline(
        store=store,
        materializer=SourceMaterializer(
            work_root=config.resolved_work_root(),
            git_command=config.git_command,
            fetch_timeout=config.fetch_timeout,
        ),
        invoker=BuildInvoker(
            build_command=config.build_command,
            stderr_tail_chars=config.stderr_tail_chars,
        ),
        artifact_extension=config.artifact_extension,
        metadata_namespace=config.metadata_namespace,
    )
    orchestrator = BuildOrchestrator(
        pipeline,
        capacity=config.queue_capacity,
        submit_timeout=config.submit_timeout,
    )
    orchestrator.start()

    app = create_app(store, orchestrator, config)
    bind_host = host if host is not None else config.host
    bind_port = port if port is not None else config.port
    logger.info(f"Listening on {bind_host}:{bind_port}")
    try:
        app.run(host=bind_host, port=bind_port, threaded=True)
    finally:
        orchestrator.shutdown(wait=False)
        store.close()


def _client(ctx):
    from progmeta.client import ProgramServiceClient

    return ProgramServiceClient(ctx.obj["server"])


def _print_events(events, output_dir: Path) -> None:
    """Echo streamed build output and save the binary on success."""
    event: BuildEvent
    for event in events:
        if isinstance(event, StdOutChunk):
            click.echo(event.text, nl=False)
        elif isinstance(event, StdErrChunk):
            click.echo(event.text, nl=False, err=True)
        elif isinstance(event, BuildSuccess):
            click.echo(f"✓ Success {event.hash_hex}")
            output_dir.mkdir(parents=True, exist_ok=True)
            # Only the file name is trusted from the server
            binary_path = output_dir / Path(event.binary_filename).name
            binary_path.write_bytes(event.binary)
            click.echo(f"Written {len(event.binary)} bytes to {binary_path}")
        elif isinstance(event, BuildFailure):
            click.echo(f"✗ {event.kind}: {event.detail}", err=True)
            raise SystemExit(1)


def _run_client_call(call):
    from progmeta.errors import ProgmetaError
    import httpx

    try:
        return call()
    except (ProgmetaError, httpx.HTTPError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _pack_directory(path: Path) -> bytes:
    """Pack a directory's contents into an in-memory tar archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for entry in sorted(path.iterdir()):
            if entry.name in (".git", "target"):
                continue
            archive.add(entry, arcname=entry.name)
    return buffer.getvalue()


@main.command("build")
@click.argument("git_url")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Where to write the built binary",
)
@click.pass_context
def build(ctx, git_url: str, output_dir: Path):
    """Build a program from a git repository URL."""
    with _client(ctx) as client:
        _run_client_call(lambda: _print_events(client.build_git(git_url), output_dir))


@main.command("build-tar")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Where to write the built binary",
)
@click.pass_context
def build_tar(ctx, path: Path, output_dir: Path):
    """
    Build a program from a tar archive or a source directory.

    PATH is either a tar archive or a directory, which is packed first.
    """
    raw_archive = _pack_directory(path) if path.is_dir() else path.read_bytes()
    with _client(ctx) as client:
        _run_client_call(lambda: _print_events(client.build_archive(raw_archive), output_dir))


@main.command("list")
@click.pass_context
def list_programs(ctx):
    """List hashes of all programs in the service."""
    with _client(ctx) as client:
        hashes = _run_client_call(client.list_programs)
    for program_hash in hashes:
        click.echo(program_hash)


@main.command("program")
@click.argument("program_hash")
@click.pass_context
def program(ctx, program_hash: str):
    """Display metadata about a program given its hex-encoded hash."""
    with _client(ctx) as client:
        metadata = _run_client_call(lambda: client.get_program(program_hash))
    click.echo(json.dumps(metadata, indent=2))


if __name__ == "__main__":
    sys.exit(main())
