"""CLI entrypoints for assetsplit."""

import asyncio
import logging
import webbrowser
from pathlib import Path
from typing import Annotated

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler

from .blobs import BlobRegistry, is_object_url
from .config import Config, load_config, parse_size
from .manifest import ManifestError
from .preview_server import bound_address, make_request_handler, serve
from .reconstructor import Reconstructor
from .splitter import JoinResult, SplitError, SplitResult, join_tree, split_tree
from .verify import VerificationReport, verify_tree

console = Console()
app = typer.Typer(help="Split oversized static assets into chunks and reassemble them.")

_MIB = 1024 * 1024

ConfigPathOption = Annotated[
    str,
    typer.Option(
        "--config",
        "-c",
        help="Path to assetsplit.yml, or a directory containing it (defaults apply when absent).",
    ),
]
RootArgument = Annotated[
    Path | None,
    typer.Argument(help="Published root directory; overrides root_dir from the configuration."),
]


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging."),
    ] = False,
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.command()
def split(
    root: RootArgument = None,
    config_path: ConfigPathOption = ".",
    max_size: Annotated[
        str | None,
        typer.Option("--max-size", "-m", help="Split files larger than this (e.g. 20MiB, 52428800)."),
    ] = None,
) -> None:
    """Split every file above the size threshold into numbered chunks."""
    config = _load(config_path, root)
    max_chunk_size = config.max_chunk_size
    if max_size is not None:
        try:
            max_chunk_size = parse_size(max_size)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--max-size") from exc

    console.print(
        f"[bold blue]Splitting[/]: checking {_display_path(config.root_dir)} "
        f"for files above {_format_size(max_chunk_size)}"
    )
    try:
        result = split_tree(config.root_dir, max_chunk_size, manifest_name=config.manifest_name)
    except SplitError as exc:
        console.print(f"[bold red]Cannot split[/]: {exc}")
        raise typer.Exit(code=1) from exc
    except OSError as exc:
        console.print(f"[bold red]Split aborted[/]: {exc}")
        raise typer.Exit(code=1) from exc

    _print_split_summary(result)


@app.command()
def join(
    root: RootArgument = None,
    config_path: ConfigPathOption = ".",
    keep_parts: Annotated[
        bool,
        typer.Option("--keep-parts", help="Leave chunk files in place after restoring originals."),
    ] = False,
) -> None:
    """Restore split files from their chunks (the inverse of ``split``)."""
    config = _load(config_path, root)
    try:
        result = join_tree(config.root_dir, manifest_name=config.manifest_name, keep_parts=keep_parts)
    except (SplitError, ManifestError, OSError) as exc:
        console.print(f"[bold red]Join failed[/]: {exc}")
        raise typer.Exit(code=1) from exc

    _print_join_summary(result)


@app.command()
def verify(
    root: RootArgument = None,
    config_path: ConfigPathOption = ".",
) -> None:
    """Check that every manifest entry is backed by contiguous chunk files."""
    config = _load(config_path, root)
    if not config.root_dir.is_dir():
        console.print(f"[bold red]Root directory not found[/]: {_display_path(config.root_dir)}")
        raise typer.Exit(code=1)

    report = verify_tree(config.root_dir, manifest_name=config.manifest_name)
    _print_verification_report(report)
    raise typer.Exit(code=1 if report.error_count else 0)


@app.command()
def resolve(
    file_name: Annotated[str, typer.Argument(help="Asset file name, e.g. soffice.wasm.gz.")],
    config_path: ConfigPathOption = ".",
    site_url: Annotated[
        str | None,
        typer.Option("--site-url", help="Published site root URL (where the manifest lives)."),
    ] = None,
    base_path: Annotated[
        str | None,
        typer.Option("--base-path", help="Path prefix joined with the file name."),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the resolved bytes to this file."),
    ] = None,
) -> None:
    """Resolve an asset against a published site, reassembling it if it was split."""
    config = _load(config_path)
    if site_url is not None:
        config.runtime.site_url = site_url if site_url.endswith("/") else f"{site_url}/"
    prefix = base_path if base_path is not None else config.runtime.asset_path

    try:
        url, payload = asyncio.run(_resolve_asset(config, prefix, file_name, fetch=output is not None))
    except httpx.HTTPError as exc:
        console.print(f"[bold red]Download failed[/]: {exc}")
        raise typer.Exit(code=1) from exc

    if is_object_url(url):
        console.print(f"[bold green]Reconstructed[/]: {prefix}{file_name} -> {url}")
    else:
        console.print(f"[bold blue]Direct[/]: {url}")

    if output is not None and payload is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(payload)
        console.print(
            f"[bold green]Written[/]: {_format_size(len(payload))} to {_display_path(output)}"
        )


async def _resolve_asset(config: Config, prefix: str, file_name: str, *, fetch: bool) -> tuple[str, bytes | None]:
    registry = BlobRegistry()
    async with httpx.AsyncClient(follow_redirects=True, timeout=config.runtime.timeout) as client:
        reconstructor = Reconstructor.from_config(config, client, registry)
        url = await reconstructor.resolve(prefix, file_name)
        payload = await reconstructor.read(url) if fetch else None
    registry.clear()
    return url, payload


@app.command()
def preview(
    root: RootArgument = None,
    config_path: ConfigPathOption = ".",
    host: Annotated[
        str,
        typer.Option("--host", help="Host interface to bind the preview server."),
    ] = "127.0.0.1",
    port: Annotated[
        int,
        typer.Option("--port", "-p", help="Port for the preview server."),
    ] = 8000,
    open_browser: Annotated[
        bool,
        typer.Option(
            "--open-browser/--no-open-browser",
            help="Automatically open the site in a browser after starting.",
        ),
    ] = False,
) -> None:
    """Serve the published root with a simple HTTP server."""
    config = _load(config_path, root)
    if port < 0 or port > 65535:
        raise typer.BadParameter("Port must be between 0 and 65535.")

    root_dir = config.root_dir
    if not root_dir.is_dir():
        console.print(f"[bold red]Root directory not found[/]: {root_dir}")
        raise typer.Exit(code=1)

    handler = make_request_handler(root_dir)
    try:
        with serve(host, port, handler) as server:
            bound_host, bound_port = bound_address(server)
            site_url = f"http://{bound_host}:{bound_port}/"
            console.print(
                f"[bold green]Preview server[/]: serving {root_dir} at {site_url} "
                "(press Ctrl+C to stop)"
            )
            if open_browser:
                webbrowser.open(site_url)
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                console.print("\n[bold yellow]Stopping preview server...[/]")
    except OSError as exc:
        console.print(f"[bold red]Failed to start preview server[/]: {exc}")
        raise typer.Exit(code=1) from exc


def _print_split_summary(result: SplitResult) -> None:
    for item in result.split_files:
        console.print(
            f"- {item.relative_path} ({_format_size(item.size)}) -> {item.chunk_count} chunk(s)"
        )

    if not result.changed:
        console.print(
            f"[bold green]Nothing to split[/]: {result.scanned_files} file(s) scanned; "
            "no new files needed splitting."
        )
        return

    console.print(
        f"[bold green]Split complete[/]: {len(result.split_files)} of {result.scanned_files} "
        f"file(s) split; manifest written to {_display_path(result.manifest_path)}"
    )


def _print_join_summary(result: JoinResult) -> None:
    if not result.restored:
        console.print(
            f"[bold yellow]Nothing to join[/]: no entries in {_display_path(result.manifest_path)}"
        )
        return

    for path in result.restored:
        console.print(f"- {_display_path(path)} (restored)")
    if result.removed_parts:
        console.print(f"[bold green]Removed[/]: {len(result.removed_parts)} chunk file(s)")
    if result.manifest_removed:
        console.print(f"[bold green]Manifest removed[/]: {_display_path(result.manifest_path)}")
    console.print(f"[bold green]Join complete[/]: restored {len(result.restored)} file(s).")


def _print_verification_report(report: VerificationReport) -> None:
    if not report.issues:
        console.print(
            "[bold green]Verification complete[/]: "
            f"{report.entries_checked} manifest entr{'y' if report.entries_checked == 1 else 'ies'} "
            "checked; no issues found."
        )
        return

    for issue in report.issues:
        style = "yellow" if issue.kind == "orphaned-chunk" else "red"
        console.print(f"[bold {style}]{issue.kind}[/] {issue.target} - {issue.message}")

    console.print(
        f"[bold blue]Summary[/]: {report.error_count} error(s), {report.warning_count} warning(s) "
        f"across {report.entries_checked} manifest entr{'y' if report.entries_checked == 1 else 'ies'}."
    )


def _format_size(size: int) -> str:
    if size >= _MIB:
        return f"{size / _MIB:.2f} MB"
    return f"{size} bytes"


def _display_path(path: Path) -> str:
    try:
        return path.relative_to(Path.cwd()).as_posix()
    except ValueError:
        return path.as_posix()


def _load(path: str, root: Path | None = None) -> Config:
    try:
        config = load_config(path)
    except FileNotFoundError as exc:
        raise typer.BadParameter(f"Config file not found: {path}") from exc
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if root is not None:
        config.root_dir = root.resolve()
    return config


if __name__ == "__main__":
    app()
