"""Command line interface for docweave."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from docweave.config import AppConfig
from docweave.embedding.encoder import EmbeddingConfig, EmbeddingModel
from docweave.engine import Engine
from docweave.models import SearchResult
from docweave.sync.persistence import PersistenceManager

console = Console()
app = typer.Typer(help="docweave - hybrid vector, keyword and link-graph search for Markdown notes")
shards_app = typer.Typer(help="Inspect and clean persisted index shards")
app.add_typer(shards_app, name="shards")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _load_config(config_path: Optional[Path], model: Optional[str], cache_dir: Optional[Path]) -> AppConfig:
    try:
        if config_path is not None:
            return AppConfig.from_toml(config_path, model_name=model, cache_dir=cache_dir)
        config = AppConfig(cache_dir=cache_dir)
        if model:
            config.model_name = model
        return config
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Invalid configuration: {exc}") from exc


def _open_engine(root: Path, config: AppConfig) -> Engine:
    if not root.is_dir():
        raise typer.BadParameter(f"Document root not found: {root}")
    embedder = EmbeddingModel(EmbeddingConfig(model_name=config.model_name))
    return Engine(root, embedder, config)


def _results_table(results: List[SearchResult]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Document")
    table.add_column("Signals")
    table.add_column("Snippet")
    for result in results:
        signals = []
        if result.is_title_match:
            signals.append("title")
        elif result.is_keyword_match:
            signals.append("keyword")
        if result.is_graph_neighbor:
            signals.append("graph")
        if not signals:
            signals.append("vector")
        snippet = (result.excerpt or "").replace("\n", " ")
        table.add_row(f"{result.score:.4f}", result.path, ",".join(signals), snippet[:180])
    return table


ROOT_ARGUMENT = typer.Argument(..., help="Folder containing Markdown notes.", resolve_path=True)
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="TOML configuration file")
MODEL_OPTION = typer.Option(None, "--model", help="Sentence-transformer model name")
CACHE_OPTION = typer.Option(None, "--cache-dir", help="Directory for the local index cache")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose logging")


@app.command()
def index(
    root: Path = ROOT_ARGUMENT,
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    rebuild: bool = typer.Option(False, "--rebuild", help="Discard the existing index first"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Index (or incrementally re-index) every note under ROOT."""
    _setup_logging(verbose)
    config = _load_config(config_path, model, cache_dir)
    engine = _open_engine(root, config)
    try:
        console.print(f"Indexing [bold]{root}[/bold] with {config.model_name}...")
        needs_rebuild = engine.start(scan=False)
        completed = engine.orchestrator.scan_all(force_wipe=rebuild or needs_rebuild)
        engine.orchestrator.force_save()
        stats = engine.stats()
        if not completed:
            console.print("[yellow]Scan did not complete.[/yellow]")
        console.print(
            f"Documents: {stats['document_count']}, chunks: {stats['chunk_count']}, "
            f"graph: {stats['node_count']} nodes / {stats['edge_count']} edges"
        )
    finally:
        engine.close()


@app.command()
def search(
    root: Path = ROOT_ARGUMENT,
    query: str = typer.Argument(..., help="Query text"),
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    top_k: int = typer.Option(10, help="Number of results to display"),
    sync: bool = typer.Option(False, "--sync", help="Re-scan changed notes before searching"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run a hybrid search."""
    _setup_logging(verbose)
    engine = _open_engine(root, _load_config(config_path, model, cache_dir))
    try:
        engine.start(scan=sync)
        results = engine.search(query, top_k=top_k)
        if not results:
            console.print("[yellow]No matches found.[/yellow]")
            return
        console.print(_results_table(results))
    finally:
        engine.close()


@app.command()
def context(
    root: Path = ROOT_ARGUMENT,
    query: str = typer.Argument(..., help="Query text"),
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    budget: Optional[int] = typer.Option(None, help="Context budget in characters"),
    top_k: int = typer.Option(20, help="Number of candidates to consider"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Print the packed context an LLM would receive for QUERY."""
    _setup_logging(verbose)
    engine = _open_engine(root, _load_config(config_path, model, cache_dir))
    try:
        engine.start(scan=False)
        assembled = engine.context(query, budget_chars=budget, top_k=top_k)
        if not assembled.used_paths:
            console.print("[yellow]No context assembled.[/yellow]")
            return
        console.print(assembled.text, markup=False, highlight=False)
        console.print(f"[dim]{assembled.used_chars} chars from {len(assembled.used_paths)} documents[/dim]")
    finally:
        engine.close()


@app.command()
def neighbors(
    root: Path = ROOT_ARGUMENT,
    path: str = typer.Argument(..., help="Note path relative to ROOT"),
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    mode: str = typer.Option("ontology", help="Traversal mode: simple or ontology"),
    similar: bool = typer.Option(False, "--similar", help="Show semantically similar notes instead"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show notes connected to PATH through links and shared topics."""
    _setup_logging(verbose)
    if mode not in ("simple", "ontology"):
        raise typer.BadParameter("mode must be 'simple' or 'ontology'")
    engine = _open_engine(root, _load_config(config_path, model, cache_dir))
    try:
        engine.start(scan=False)
        results = engine.similar(path) if similar else engine.neighbors(path, mode=mode)
        if not results:
            console.print("[yellow]No connected notes.[/yellow]")
            return
        console.print(_results_table(results))
    finally:
        engine.close()


@app.command()
def watch(
    root: Path = ROOT_ARGUMENT,
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Keep the index in sync with ROOT until interrupted."""
    _setup_logging(verbose)
    engine = _open_engine(root, _load_config(config_path, model, cache_dir))
    source = engine.source
    try:
        engine.start(scan=True)
        source.start_watching()
        console.print(f"Watching [bold]{root}[/bold]. Press Ctrl+C to stop.")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping...")
    finally:
        source.stop_watching()
        engine.close()


@app.command()
def web(
    root: Path = ROOT_ARGUMENT,
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    config_path: Optional[Path] = CONFIG_OPTION,
    model: Optional[str] = MODEL_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
) -> None:
    """Serve the search API over HTTP."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - uvicorn is a declared dependency
        raise typer.BadParameter("uvicorn is not installed") from exc

    from docweave.web.app import app as web_app
    from docweave.web.app import configure

    engine = _open_engine(root, _load_config(config_path, model, cache_dir))
    try:
        engine.start(scan=True)
        configure(engine)
        console.print(f"Starting web interface on http://{host}:{port} (root: {root})")
        uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
    finally:
        configure(None)
        engine.close()


def _persistence(root: Path, config: AppConfig) -> PersistenceManager:
    return PersistenceManager(config.resolve_cache_dir(Path.cwd()), root, data_dir=config.data_dir)


@shards_app.command("list")
def list_shards(
    root: Path = ROOT_ARGUMENT,
    config_path: Optional[Path] = CONFIG_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
) -> None:
    """List persisted shards for ROOT."""
    persistence = _persistence(root, _load_config(config_path, None, cache_dir))
    try:
        keys = persistence.list_shards()
    finally:
        persistence.close()
    if not keys:
        console.print("[yellow]No shards found.[/yellow]")
        return
    for key in keys:
        console.print(key)


@shards_app.command("prune")
def prune_shards(
    root: Path = ROOT_ARGUMENT,
    keep: List[str] = typer.Option([], "--keep", help="Shard key to keep (repeatable)"),
    config_path: Optional[Path] = CONFIG_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
) -> None:
    """Delete every shard except the ones given with --keep."""
    persistence = _persistence(root, _load_config(config_path, None, cache_dir))
    try:
        removed = persistence.prune_shards(keep)
    finally:
        persistence.close()
    console.print(f"Removed {removed} shards.")


@shards_app.command("purge")
def purge_shards(
    root: Path = ROOT_ARGUMENT,
    config_path: Optional[Path] = CONFIG_OPTION,
    cache_dir: Optional[Path] = CACHE_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all persisted state for ROOT."""
    if not yes and not typer.confirm("Delete all persisted index state?"):
        raise typer.Abort()
    persistence = _persistence(root, _load_config(config_path, None, cache_dir))
    try:
        persistence.purge_all()
    finally:
        persistence.close()
    console.print("All shards deleted.")
