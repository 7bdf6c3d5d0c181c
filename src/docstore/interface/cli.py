"""
docstore CLI - Command-line interface.

Commands:
- docstore get posts/hello → Show a document
- docstore put posts/hello --content "# Hello" → Create or replace a document
- docstore rm posts/hello [--soft] → Delete a document
- docstore ls [--type Post] [--prefix posts/] → List documents
- docstore search "query" → Ranked search
- docstore publish acme docs.json → Stage documents (analytical)
- docstore process → Materialize pending Actions (analytical)
- docstore actions → Show Actions (analytical)
- docstore serve → Run the HTTP API

The backend comes from --backend or DOCSTORE_BACKEND.
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from docstore.core.config import settings, setup_logging
from docstore.core.errors import DocstoreError
from docstore.core.types import ListFilter, SearchQuery
from docstore.storage import create_adapter
from docstore.storage.analytical import AnalyticalAdapter
from docstore.storage.base import StorageAdapter
from docstore.storage.processor import Processor

app = typer.Typer(
    name="docstore",
    help="docstore - one document contract over three storage backends",
    no_args_is_help=True,
)
console = Console()

BackendOption = typer.Option(None, "--backend", "-b", help="relational, content or analytical")
NamespaceOption = typer.Option(None, "--ns", help="Namespace to read instead of the default")

_JSON_NAMES = {dict: "object", list: "array"}


def open_adapter(backend: Optional[str]) -> StorageAdapter:
    """Create the adapter for a command, exiting cleanly on bad configuration."""
    setup_logging()
    try:
        return create_adapter(backend)
    except DocstoreError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def open_queue(backend: Optional[str]) -> AnalyticalAdapter:
    adapter = open_adapter(backend or "analytical")
    if not isinstance(adapter, AnalyticalAdapter):
        console.print("[red]Error: the action queue requires the analytical backend[/red]")
        adapter.close()
        raise typer.Exit(1)
    return adapter


def fail(e: DocstoreError) -> None:
    console.print(f"[red]Error: {e}[/red]")
    raise typer.Exit(1)


def parse_json(value: str, option: str, expect: type | tuple[type, ...] = dict):
    """Decode a JSON option, exiting with an error message when it is malformed."""
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: {option} is not valid JSON: {e}[/red]")
        raise typer.Exit(1)
    if not isinstance(decoded, expect):
        kinds = expect if isinstance(expect, tuple) else (expect,)
        names = " or ".join(_JSON_NAMES[k] for k in kinds)
        console.print(f"[red]Error: {option} must be a JSON {names}[/red]")
        raise typer.Exit(1)
    return decoded


@app.command()
def get(
    doc_id: str = typer.Argument(..., help="Document id"),
    ns: Optional[str] = NamespaceOption,
    backend: Optional[str] = BackendOption,
):
    """Show a document."""
    with open_adapter(backend) as store:
        try:
            record = store.get(doc_id, ns=ns)
        except DocstoreError as e:
            fail(e)

    if record is None:
        console.print(f"[yellow]{doc_id} not found[/yellow]")
        raise typer.Exit(1)

    meta = [f"[bold]type:[/bold] {record.type or '-'}", f"[bold]version:[/bold] {record.version}"]
    if record.data:
        meta.append(f"[bold]data:[/bold] {json.dumps(record.data, default=str)}")
    console.print(Panel("\n".join(meta), title=record.id))
    if record.content:
        console.print(Markdown(record.content))


@app.command()
def put(
    doc_id: str = typer.Argument(..., help="Document id"),
    content: Optional[str] = typer.Option(None, "--content", "-c", help="Document body"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the body from a file"),
    doc_type: Optional[str] = typer.Option(None, "--type", "-t", help="Type tag"),
    data: Optional[str] = typer.Option(None, "--data", "-d", help="JSON object payload"),
    create_only: bool = typer.Option(False, "--create-only", help="Fail if the document exists"),
    update_only: bool = typer.Option(False, "--update-only", help="Fail if the document does not exist"),
    version: Optional[str] = typer.Option(None, "--version", help="Expected current version"),
    backend: Optional[str] = BackendOption,
):
    """Create or replace a document."""
    if file:
        content = file.read_text(encoding="utf-8")
    if content is None:
        console.print("[red]Error: --content or --file is required[/red]")
        raise typer.Exit(1)

    payload = parse_json(data, "--data") if data else {}
    record = {"type": doc_type, "data": payload, "content": content}

    with open_adapter(backend) as store:
        try:
            result = store.set(
                doc_id, record, create_only=create_only, update_only=update_only, version=version
            )
        except DocstoreError as e:
            fail(e)

    verb = "Created" if result.created else "Updated"
    console.print(f"[green]✓ {verb} {result.id}[/green] [dim](version {result.version})[/dim]")


@app.command()
def rm(
    doc_id: str = typer.Argument(..., help="Document id"),
    soft: bool = typer.Option(False, "--soft", help="Mark as deleted instead of removing"),
    backend: Optional[str] = BackendOption,
):
    """Delete a document."""
    with open_adapter(backend) as store:
        try:
            result = store.delete(doc_id, soft=soft)
        except DocstoreError as e:
            fail(e)

    if result.deleted:
        console.print(f"[green]✓ Deleted {result.id}[/green]")
    else:
        console.print(f"[dim]{result.id} was not present[/dim]")


def _records_table(title: str, records, with_score: bool = False) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Version", style="dim")
    if with_score:
        table.add_column("Score", justify="right")
    for record in records:
        row = [record.id, record.type or "-", str(record.version)]
        if with_score:
            row.append(f"{record.score:g}")
        table.add_row(*row)
    return table


@app.command()
def ls(
    doc_type: Optional[list[str]] = typer.Option(None, "--type", "-t", help="Type filter (repeatable)"),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="Id prefix"),
    where: Optional[str] = typer.Option(None, "--where", "-w", help="JSON object of dotted path → value"),
    sort_by: Optional[str] = typer.Option(None, "--sort", help="'id' or a data field"),
    desc: bool = typer.Option(False, "--desc", help="Sort descending"),
    limit: int = typer.Option(20, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    ns: Optional[str] = NamespaceOption,
    backend: Optional[str] = BackendOption,
):
    """List documents."""
    flt = ListFilter(
        ns=ns,
        type=doc_type or None,
        prefix=prefix,
        where=parse_json(where, "--where") if where else None,
        sort_by=sort_by,
        sort_order="desc" if desc else "asc",
        limit=limit,
        offset=offset,
    )
    with open_adapter(backend) as store:
        try:
            result = store.list(flt)
        except DocstoreError as e:
            fail(e)

    if not result.documents:
        console.print("[dim]No documents found[/dim]")
        return
    console.print(_records_table(f"Documents ({result.total})", result.documents))
    if result.has_more:
        console.print(f"[dim]More results: --offset {offset + limit}[/dim]")


@app.command()
def search(
    query: str = typer.Argument(..., help="Search terms"),
    fields: Optional[list[str]] = typer.Option(None, "--field", "-f", help="Restrict to data field (repeatable)"),
    doc_type: Optional[list[str]] = typer.Option(None, "--type", "-t"),
    limit: int = typer.Option(20, "--limit", "-n"),
    ns: Optional[str] = NamespaceOption,
    backend: Optional[str] = BackendOption,
):
    """Ranked search over content and data fields."""
    with open_adapter(backend) as store:
        try:
            result = store.search(
                SearchQuery(query=query, ns=ns, fields=fields or None, type=doc_type or None, limit=limit)
            )
        except DocstoreError as e:
            fail(e)

    if not result.documents:
        console.print("[dim]No matches[/dim]")
        return
    console.print(_records_table(f"Matches ({result.total})", result.documents, with_score=True))


@app.command()
def publish(
    ns: str = typer.Argument(..., help="Namespace"),
    source: Path = typer.Argument(..., help="JSON file with a list of documents"),
    actor: str = typer.Option("system", "--actor"),
    branch: str = typer.Option("main", "--branch"),
    commit: str = typer.Option("", "--commit"),
    message: str = typer.Option("", "--message", "-m", help="Commit message"),
    backend: Optional[str] = BackendOption,
):
    """Stage documents for materialization."""
    documents = parse_json(source.read_text(encoding="utf-8"), str(source), (list, dict))
    if isinstance(documents, dict):
        documents = documents.get("documents", [])

    with open_queue(backend) as queue:
        try:
            action = queue.publish(
                ns, documents, actor=actor, branch=branch, commit=commit, commit_message=message
            )
        except DocstoreError as e:
            fail(e)

    console.print(f"[green]✓ Staged {action.total} documents[/green]")
    console.print(f"  Action: [cyan]{action.id}[/cyan] ({action.status.value})")


@app.command()
def process(
    ns: Optional[str] = typer.Option(None, "--ns", help="Only this namespace"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum Actions this run"),
    backend: Optional[str] = BackendOption,
):
    """Materialize pending Actions."""
    with open_queue(backend) as queue:
        with console.status("Processing..."):
            result = Processor(queue).run(ns=ns, limit=limit)

    console.print(
        f"Processed {result.processed}: [green]{result.succeeded} succeeded[/green], "
        f"[red]{result.failed} failed[/red], {result.skipped} skipped, {result.things} things"
    )
    for error in result.errors:
        console.print(f"  [red]• {error}[/red]")


@app.command()
def actions(
    ns: Optional[str] = typer.Option(None, "--ns"),
    status: str = typer.Option("all", "--status", "-s", help="pending, active, completed, failed or all"),
    limit: int = typer.Option(20, "--limit", "-n"),
    backend: Optional[str] = BackendOption,
):
    """Show Actions."""
    with open_queue(backend) as queue:
        try:
            items = queue.list_actions(ns=ns, status=None if status == "all" else status, limit=limit)
        except (DocstoreError, ValueError) as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    if not items:
        console.print("[dim]No actions[/dim]")
        return

    table = Table(title="Actions")
    table.add_column("ID", style="cyan")
    table.add_column("NS")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created", style="dim")
    colors = {"pending": "yellow", "active": "blue", "completed": "green", "failed": "red"}
    for action in items:
        state = action.status.value
        table.add_row(
            action.id,
            action.ns,
            f"[{colors[state]}]{state}[/{colors[state]}]",
            f"{action.progress}/{action.total}",
            action.created_at.strftime("%Y-%m-%d %H:%M:%S") if action.created_at else "-",
        )
    console.print(table)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    backend: Optional[str] = BackendOption,
):
    """Run the HTTP API."""
    import uvicorn

    from docstore.interface.api import create_app

    adapter = open_adapter(backend)
    console.print(f"[bold]docstore[/bold] serving the {adapter.kind} backend")
    try:
        uvicorn.run(create_app(adapter), host=host or settings.api_host, port=port or settings.api_port)
    finally:
        adapter.close()


if __name__ == "__main__":
    app()
