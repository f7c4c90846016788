import typer
import threading
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from plexd.config.loader import load_config
from plexd.config.models import AppConfig
from plexd.infrastructure.logging import setup_logging
from plexd.infrastructure.event_bus import EventBus
from plexd.infrastructure.web_server import PlexdWebServer
from plexd.pipeline.service import MediaService

app = typer.Typer(help="plexd - upload, transcode and serve video files")


def _apply_overrides(
    config: AppConfig,
    host: Optional[str] = None,
    port: Optional[int] = None,
    data_dir: Optional[Path] = None,
    max_concurrent: Optional[int] = None,
    transcode: Optional[bool] = None,
    log_path: Optional[Path] = None,
    debug: bool = False,
) -> AppConfig:
    if host: config.server.host = host
    if port: config.server.port = port
    if data_dir: config.storage.data_dir = str(data_dir)
    if max_concurrent: config.transcode.max_concurrent = max_concurrent
    if transcode is not None: config.transcode.enabled = transcode
    if log_path: config.general.log_path = str(log_path)
    if debug: config.general.debug = True
    # Re-validate so CLI values obey the same constraints as YAML values
    return AppConfig.model_validate(config.model_dump())


def _banner_lines(config: AppConfig, service: MediaService, startup: dict, bound_port: int) -> list:
    host = config.server.host
    display_host = "localhost" if host in ("0.0.0.0", "::") else host
    reconcile = startup.get("reconcile", {})
    if service.transcoding_enabled:
        encoder = config.transcode.hardware_encoder or config.transcode.software_encoder
        if config.transcode.hardware_encoder:
            encoder = f"{encoder} (fallback: {config.transcode.software_encoder})"
        transcode_line = f"Transcoding: ON | Encoder: {encoder} | Max concurrent: {config.transcode.max_concurrent}"
    else:
        transcode_line = "Transcoding: OFF (originals only)"
    return [
        f"Local:   http://{display_host}:{bound_port}/",
        f"API:     http://{display_host}:{bound_port}/api/files/list",
        f"Data:    {Path(config.storage.data_dir).resolve()}",
        transcode_line,
        f"Records: {startup.get('records', 0)} | Expired: {startup.get('expired', 0)} | "
        f"Re-queued: {reconcile.get('requeued', 0)} | Adopted: {reconcile.get('adopted', 0)}",
        f"Expiry:  {config.lifecycle.expiry_hours:g}h for files without a set",
    ]


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (overrides config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Listen port (overrides config)"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Directory for uploads, output and metadata"),
    max_concurrent: Optional[int] = typer.Option(None, "--max-concurrent", "-j", help="Concurrent transcode jobs"),
    transcode: Optional[bool] = typer.Option(None, "--transcode/--no-transcode", help="Enable/disable transcoding"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Run the upload/transcode HTTP server until Ctrl+C."""
    service: Optional[MediaService] = None
    server: Optional[PlexdWebServer] = None
    try:
        config = _apply_overrides(
            load_config(config_path),
            host=host,
            port=port,
            data_dir=data_dir,
            max_concurrent=max_concurrent,
            transcode=transcode,
            log_path=log_path,
            debug=debug,
        )
        log_path_value = Path(config.general.log_path) if config.general.log_path else None
        logger = setup_logging(
            Path(config.storage.data_dir),
            debug=config.general.debug,
            log_path=log_path_value,
            max_bytes=config.general.log_max_bytes,
            backup_count=config.general.log_backups,
        )
        logger.info(
            f"Config: port={config.server.port}, data_dir={config.storage.data_dir}, "
            f"max_concurrent={config.transcode.max_concurrent}, transcode={config.transcode.enabled}, "
            f"debug={config.general.debug}"
        )

        service = MediaService(config, event_bus=EventBus())
        startup = service.start()

        server = PlexdWebServer(
            service,
            host=config.server.host,
            port=config.server.port,
            web_root=Path(config.server.web_root) if config.server.web_root else None,
            cors=config.server.cors,
        )
        server.start()

        console = Console()
        console.print(Panel(
            "\n".join(_banner_lines(config, service, startup, server.bound_port)),
            title="plexd",
            border_style="cyan",
        ))

        stop_event = threading.Event()
        while not stop_event.is_set():
            stop_event.wait(1.0)

    except KeyboardInterrupt:
        typer.secho("\n✓ Server stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    finally:
        if server:
            server.stop()
        if service:
            service.stop()


@app.command()
def sweep(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Directory for uploads, output and metadata"),
):
    """Delete expired files (no set association, older than the retention window) and exit."""
    try:
        config = _apply_overrides(load_config(config_path), data_dir=data_dir, transcode=False)
        log_path_value = Path(config.general.log_path) if config.general.log_path else None
        setup_logging(
            Path(config.storage.data_dir),
            debug=config.general.debug,
            log_path=log_path_value,
            max_bytes=config.general.log_max_bytes,
            backup_count=config.general.log_backups,
        )
        service = MediaService(config, event_bus=EventBus())
        service.store.load()
        removed = service.expiry_sweep()
    except Exception as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {removed} expired file(s)")


if __name__ == "__main__":
    app()
