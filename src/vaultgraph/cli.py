from __future__ import annotations

import json
import logging
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from .config import Settings
from .graph import identity
from .graph import sqlite_graph as g
from .graph.dedupe import DEDUPE_ORDER, dedupe_all, dedupe_node_type
from .index.embedder import Embedder, OllamaEmbeddingClient
from .ingest.pipeline import IngestServices, PipelineOptions, ingest_article
from .ingest.runner import iter_documents, ingest_vault
from .llm.client import OllamaChatClient


app = typer.Typer(add_completion=False, help="vaultgraph: markdown vault -> SQLite knowledge graph.")
console = Console()


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR"),
):
    settings = Settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _services(settings: Settings) -> IngestServices:
    llm = OllamaChatClient(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout_s=settings.ollama_timeout_s,
        options={"temperature": settings.ollama_temperature},
    )
    if settings.embed_backend == "fastembed":
        embedder = Embedder(settings.embed_model)
    elif settings.embed_backend == "ollama":
        embedder = OllamaEmbeddingClient(
            base_url=settings.ollama_base_url,
            model=settings.embed_model,
            timeout_s=settings.ollama_timeout_s,
        )
    else:
        raise typer.BadParameter(f"Unknown embed backend: {settings.embed_backend!r} (use ollama or fastembed)")
    return IngestServices(llm=llm, embedder=embedder)


def _options(settings: Settings, *, force: bool) -> PipelineOptions:
    return PipelineOptions(
        force_reimport=force,
        window_size=settings.window_size,
        embed_batch_size=settings.embed_batch_size,
        embed_batch_delay_s=settings.embed_batch_delay_s,
        keyword_dims=settings.keyword_dims,
    )


def _vault_dir(vault: Path | None, settings: Settings) -> Path:
    if vault is not None:
        return vault
    if settings.vault_path:
        return Path(settings.vault_path)
    raise typer.BadParameter("Provide --vault or set VAULTGRAPH_VAULT_PATH")


@app.command()
def ingest(
    vault: Path | None = typer.Option(None, "--vault", file_okay=False, dir_okay=True, help="Vault root directory"),
    db: Path | None = typer.Option(None, "--db", help="SQLite DB path to create/update"),
    force: bool = typer.Option(False, "--force", help="Reimport even when content is unchanged"),
    concurrency: int | None = typer.Option(None, "--concurrency", help="Documents in flight at once"),
):
    """Ingest every markdown file in the vault."""
    settings = Settings()
    vault_dir = _vault_dir(vault, settings)
    if not vault_dir.is_dir():
        raise typer.BadParameter(f"Vault directory not found: {vault_dir}")
    db_path = str(db or settings.db_path)

    documents = list(iter_documents(vault_dir))
    if not documents:
        console.print(f"No markdown files under {vault_dir}", style="yellow")
        raise typer.Exit(code=0)

    failures: list[tuple[str, str]] = []

    with Progress(
        TextColumn("[bold]Importing"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TextColumn("{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("", total=len(documents))

        def on_progress(completed: int, total: int, active: list[str]) -> None:
            shown = ", ".join(active[:3]) + (" ..." if len(active) > 3 else "")
            progress.update(task, completed=completed, description=shown)

        def on_error(path: str, error: Exception) -> None:
            failures.append((path, str(error)))

        result = ingest_vault(
            db_path=db_path,
            documents=documents,
            services=_services(settings),
            options=_options(settings, force=force),
            concurrency=concurrency or settings.import_concurrency,
            on_progress=on_progress,
            on_error=on_error,
        )

    console.print(f"Imported: {result.successful}  Failed: {result.failed}")
    if failures:
        table = Table(title="Failures")
        table.add_column("path")
        table.add_column("error")
        for path, err in failures:
            table.add_row(path, err)
        console.print(table)
        raise typer.Exit(code=1)


@app.command()
def reimport(
    source_path: str = typer.Argument(..., help="Vault-relative path, e.g. Writing/agency.md"),
    vault: Path | None = typer.Option(None, "--vault", file_okay=False, dir_okay=True),
    db: Path | None = typer.Option(None, "--db"),
    force: bool = typer.Option(True, "--force/--no-force", help="Reimport even when content is unchanged"),
):
    """(Re)import a single document."""
    settings = Settings()
    full_path = _vault_dir(vault, settings) / source_path
    if not full_path.is_file():
        console.print(f"File not found: {full_path}", style="red")
        raise typer.Exit(code=2)

    content = full_path.read_text(encoding="utf-8", errors="replace")

    conn = g.connect(db or settings.db_path)
    try:
        g.init_db(conn)
        article_id = ingest_article(
            conn=conn,
            source_path=Path(source_path).as_posix(),
            content=content,
            services=_services(settings),
            options=_options(settings, force=force),
            on_progress=lambda item, done, total: console.print(f"[{done}/{total}] {item}", markup=False),
        )
    finally:
        conn.close()

    console.print(f"Article id: {article_id}")


@app.command()
def dedupe(
    db: Path = typer.Option(..., "--db", exists=True, file_okay=True, dir_okay=False),
    node_type: str | None = typer.Option(None, "--node-type", help="article, chunk or project (default: all)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be deleted"),
):
    """Remove duplicate nodes by identity key, keeping the oldest."""
    if node_type is not None and node_type not in DEDUPE_ORDER:
        raise typer.BadParameter(f"--node-type must be one of {', '.join(DEDUPE_ORDER)}")

    conn = g.connect(db)
    try:
        g.init_db(conn)
        if node_type is None:
            results = dedupe_all(conn, dry_run=dry_run)
        else:
            results = [dedupe_node_type(conn, node_type, dry_run=dry_run)]
    finally:
        conn.close()

    table = Table(title="Dedupe" + (" (dry run)" if dry_run else ""))
    table.add_column("node_type")
    table.add_column("kept", justify="right")
    table.add_column("deleted", justify="right")
    for r in results:
        table.add_row(r["node_type"], str(r["kept"]), str(r["deleted"]))
    console.print(table)


@app.command()
def stats(
    db: Path = typer.Option(..., "--db", exists=True, file_okay=True, dir_okay=False),
):
    """Show graph stats."""
    conn = g.connect(db)
    try:
        g.init_db(conn)
        counts = g.count_rows(conn)
    finally:
        conn.close()

    table = Table(title="vaultgraph Stats")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for k, v in counts.items():
        table.add_row(k, str(v))
    console.print(table)

    if counts["reimport_staging"]:
        console.print(
            "Staged refs from an interrupted reimport are pending; re-run ingest for those paths.",
            style="yellow",
        )


@app.command()
def show(
    db: Path = typer.Option(..., "--db", exists=True, file_okay=True, dir_okay=False),
    source_path: str = typer.Option(..., "--source-path", help="Vault-relative path of the article"),
    show_text: bool = typer.Option(False, "--show-text", help="Print full chunk text"),
):
    """Show an article with its chunks and keywords."""
    conn = g.connect(db)
    try:
        g.init_db(conn)
        article = identity.find_existing(conn, "article", {"source_path": source_path})
        if article is None:
            console.print("No such article.", style="yellow")
            raise typer.Exit(code=2)
        article_keywords = g.get_keywords_for_node(conn, article["id"])
        chunks = [(c, g.get_keywords_for_node(conn, c["id"])) for c in g.get_chunks_for_article(conn, article["id"])]
    finally:
        conn.close()

    console.print(f"id: {article['id']}", markup=False)
    console.print(f"title: {article['title']}", markup=False)
    console.print(f"hash: {article['content_hash']}", markup=False)
    console.print(f"summary: {article['summary']}", markup=False)
    console.print(f"keywords: {', '.join(article_keywords)}", markup=False)

    for c, kws in chunks:
        console.print("=" * 80, markup=False)
        heading = " > ".join(json.loads(c["heading_context"])) if c["heading_context"] else ""
        console.print(f"[{c['position']}] {c['chunk_type'] or 'unlabeled'}  {heading}", markup=False, style="bold")
        console.print(f"keywords: {', '.join(kws)}", markup=False)
        text = str(c["content"])
        if not show_text and len(text) > 220:
            text = " ".join(text[:220].split()) + "..."
        console.print(text, markup=False)


@app.command()
def doctor(
    db: Path | None = typer.Option(None, "--db", help="Optional DB path to check"),
):
    """Check the Ollama server, configured models and the DB; print actionable fixes."""
    settings = Settings()
    ollama_url = settings.ollama_base_url.rstrip("/")

    ok = True

    console.print("Ollama:")
    try:
        r = httpx.get(f"{ollama_url}/api/tags", timeout=5.0)
        r.raise_for_status()
        data = r.json()
        models = [m.get("name") for m in (data.get("models") or []) if isinstance(m, dict)]
        console.print(f"- Server reachable at {ollama_url} ({len(models)} model(s) installed).", style="green")
        needed = [settings.ollama_model]
        if settings.embed_backend == "ollama":
            needed.append(settings.embed_model)
        for name in needed:
            if name in models or f"{name}:latest" in models:
                console.print(f"- Model OK: {name}", style="green")
            else:
                console.print(f"- Missing model: {name}", style="yellow")
                console.print(f"  Fix: `ollama pull {name}`", style="yellow")
                ok = False
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"- Not reachable at {ollama_url}: {e}", style="red")
        console.print("  Fix: start Ollama (`ollama serve`) then retry.", style="yellow")
        ok = False

    if db is not None:
        console.print("\nDB:")
        if not db.exists():
            console.print(f"- Missing DB: {db}", style="red")
            console.print("  Fix: run `vaultgraph ingest --vault ... --db ...`", style="yellow")
            ok = False
        else:
            conn = g.connect(db)
            try:
                g.init_db(conn)
                counts = g.count_rows(conn)
            finally:
                conn.close()
            console.print(f"- Articles: {counts['articles']}", style="green" if counts["articles"] else "yellow")
            console.print(f"- Chunks: {counts['chunks']}", style="green" if counts["chunks"] else "yellow")
            if counts["reimport_staging"]:
                console.print(
                    f"- {counts['reimport_staging']} interrupted reimport(s) with staged refs.", style="red"
                )
                console.print("  Fix: re-run `vaultgraph ingest` to restore them.", style="yellow")
                ok = False

    if not ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
