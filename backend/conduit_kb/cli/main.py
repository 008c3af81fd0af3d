"""CLI entrypoint for conduit-kb."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import orjson
import typer

from conduit_kb.core.cancellation import CancellationToken
from conduit_kb.core.config import get_settings
from conduit_kb.core.errors import KnowledgeBaseError
from conduit_kb.core.logging import configure_logging
from conduit_kb.core.metrics import metrics_payload
from conduit_kb.engine import KnowledgeBase
from conduit_kb.ingest.watcher import SourceWatcher
from conduit_kb.models.dto import SearchFilters, SearchResponse

app = typer.Typer(name="ckb", help="Local knowledge base command-line interface")
sources_app = typer.Typer(name="sources", help="Manage registered sources")
app.add_typer(sources_app, name="sources")


def _echo(payload: object) -> None:
    typer.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2, default=str).decode("utf-8"))


@contextmanager
def _open() -> Iterator[KnowledgeBase]:
    try:
        kb = KnowledgeBase(get_settings())
    except KnowledgeBaseError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    try:
        yield kb
    except KnowledgeBaseError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        kb.close()


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level"),
) -> None:
    """Configure logging before any command runs."""
    try:
        settings = get_settings()
    except KnowledgeBaseError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    configure_logging(log_level or settings.log_level, use_json=settings.log_json)


@sources_app.command("add")
def add_source(
    path: Path = typer.Argument(..., help="Directory or file to index"),
    include: Optional[List[str]] = typer.Option(None, "--include", help="Include glob; repeatable"),
    exclude: Optional[List[str]] = typer.Option(None, "--exclude", help="Exclude glob; repeatable"),
) -> None:
    """Register a folder/file source."""
    with _open() as kb:
        source_id = kb.register_source(path, include=include or None, exclude=exclude or None)
        _echo(kb.get_source(source_id).to_dict())


@sources_app.command("list")
def list_sources() -> None:
    """List registered sources."""
    with _open() as kb:
        _echo([source.to_dict() for source in kb.list_sources()])


@sources_app.command("remove")
def remove_source(source_id: str = typer.Argument(..., help="Source identifier")) -> None:
    """Remove a source and everything indexed from it."""
    with _open() as kb:
        kb.unregister_source(source_id)
        _echo({"status": "ok", "source_id": source_id})


@sources_app.command("documents")
def list_documents(source_id: str = typer.Argument(..., help="Source identifier")) -> None:
    """List the documents known for a source."""
    with _open() as kb:
        _echo(
            [
                {
                    "id": document.id,
                    "path": document.rel_path,
                    "content_type": document.content_type,
                    "title": document.title,
                    "fully_indexed": document.fully_indexed(),
                    "stores": {name: status.value for name, status in document.store_status.items()},
                }
                for document in kb.list_documents(source_id)
            ]
        )


@app.command()
def sync(
    source: Optional[str] = typer.Option(None, "--source", help="Sync only this source ID"),
) -> None:
    """Bring the indexes up to date with the registered sources."""
    token = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda *_: token.cancel()) if _main_thread() else None
    try:
        with _open() as kb:
            report = kb.sync(source, token=token)
            _echo(report.model_dump())
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    mode: str = typer.Option("hybrid", "--mode", help="hybrid, semantic or lexical"),
    source: Optional[List[str]] = typer.Option(None, "--source", help="Restrict to source IDs"),
    content_type: Optional[List[str]] = typer.Option(None, "--type", help="Restrict to content types"),
    extension: Optional[List[str]] = typer.Option(None, "--ext", help="Restrict to file extensions"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Number of results to return"),
    rerank: Optional[bool] = typer.Option(None, "--rerank/--no-rerank", help="Force reranking on/off"),
    full_text: bool = typer.Option(False, "--full-text", help="Include full chunk text"),
    merge: bool = typer.Option(False, "--merge", help="Also fold hits into one passage per document"),
) -> None:
    """Search the knowledge base."""
    if mode not in ("hybrid", "semantic", "lexical"):
        typer.echo(f"Error: unknown mode '{mode}'", err=True)
        raise typer.Exit(code=2)
    filters = SearchFilters(
        source_ids=source or None,
        content_types=content_type or None,
        extensions=extension or None,
    )
    with _open() as kb:
        response = kb.search(query, filters=filters, mode=mode, limit=limit, rerank=rerank, merge=merge)
        _echo(_results_payload(response, full_text))


@app.command()
def similar(
    document_id: str = typer.Argument(..., help="Document identifier"),
    source: Optional[List[str]] = typer.Option(None, "--source", help="Restrict to source IDs"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Number of documents to return"),
    full_text: bool = typer.Option(False, "--full-text", help="Include full chunk text"),
) -> None:
    """Find documents similar to a known document."""
    with _open() as kb:
        response = kb.similar(document_id, filters=SearchFilters(source_ids=source or None), limit=limit)
        _echo(_results_payload(response, full_text))


@app.command()
def watch(
    debounce: float = typer.Option(2.0, "--debounce", help="Seconds of quiet before a sync starts"),
) -> None:
    """Watch every registered source and sync on change until interrupted."""
    stop = threading.Event()
    with _open() as kb:
        watcher = SourceWatcher(kb.sync, debounce_seconds=debounce)
        for source in kb.list_sources():
            watcher.add_source(source)
        watcher.start()
        typer.echo(f"Watching {len(kb.list_sources())} source(s); press Ctrl+C to stop", err=True)
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            watcher.stop()


@app.command()
def status() -> None:
    """Show index sizes and degraded capabilities."""
    with _open() as kb:
        _echo(kb.status())


@app.command()
def metrics() -> None:
    """Print Prometheus metrics for this process."""
    payload, _ = metrics_payload()
    typer.echo(payload.decode("utf-8"))


def _results_payload(response: SearchResponse, full_text: bool) -> dict:
    payload = response.model_dump()
    if payload.get("merged") is None:
        payload.pop("merged", None)
    if not full_text:
        for result in payload["results"]:
            result.pop("text", None)
    return payload


def _main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()


if __name__ == "__main__":
    app()
