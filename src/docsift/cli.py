"""CLI entry point for docsift."""

import functools
import json
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.table import Table

from .config import DEFAULT_CONFIG, load_config
from .errors import DocsiftError
from .log import setup_logging

console = Console()


def _handle_errors(func):
    """Print docsift errors in red and exit non-zero instead of a traceback."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DocsiftError as e:
            console.print(f"[red]✗ {e}[/]")
            raise SystemExit(1)

    return wrapper


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """docsift - Ingest documents, search them semantically, find duplicates."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_config(ctx) -> dict:
    config = load_config(ctx.obj.get("config_path"))
    setup_logging("DEBUG" if ctx.obj.get("verbose") else config.get("log_level", "INFO"), console=console)
    return config


def _repository(config: dict):
    from .storage import get_chunk_repository

    return get_chunk_repository(config)


def _search_engine(config: dict, repository=None):
    from .embeddings.embedder import get_embedding_client
    from .query.search import SearchEngine, SearchSettings
    from .query.tags import TagExtractor

    return SearchEngine(
        repository or _repository(config),
        get_embedding_client(config),
        tag_extractor=TagExtractor.from_config(config),
        settings=SearchSettings.from_config(config),
    )


def _parse_filters(status, exclude_status, legal_hold, where):
    from .storage import ChunkFilter

    metadata = {}
    for item in where:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected FIELD=VALUE, got {item!r}", param_hint="--where")
        metadata[key.strip()] = value.strip()
    try:
        return ChunkFilter(
            allowed_statuses=list(status) or None,
            excluded_statuses=list(exclude_status) or None,
            legal_hold=legal_hold,
            metadata=metadata,
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--where")


def _filter_options(func):
    func = click.option("--where", multiple=True, help="Metadata equality filter FIELD=VALUE (repeatable)")(func)
    func = click.option("--legal-hold/--no-legal-hold", default=None, help="Only documents on/off legal hold")(func)
    func = click.option("--exclude-status", multiple=True, help="Skip documents with this status (repeatable)")(func)
    func = click.option("--status", multiple=True, help="Only documents with this status (repeatable)")(func)
    return func


@cli.command()
@click.option("--path", default=None, help="Where to create the config (default ~/.docsift)")
@click.pass_context
def init(ctx, path):
    """Create a docsift home directory with a default configuration."""
    home = Path(path).expanduser().resolve() if path else Path("~/.docsift").expanduser()
    console.print(f"[bold green]Initializing docsift at {home}[/]")
    home.mkdir(parents=True, exist_ok=True)

    config_file = home / "config.yaml"
    if config_file.exists():
        console.print(f"  [dim]Config already exists: {config_file}[/]")
    else:
        cfg = dict(DEFAULT_CONFIG)
        cfg["database_url"] = f"sqlite:///{home / 'docsift.db'}"
        header = (
            "# Embedding API key (or set DOCSIFT_EMBEDDING_API_KEY / VOYAGE_API_KEY / OPENAI_API_KEY)\n"
            "# embedding:\n"
            "#   api_key: your-key-here\n\n"
            "# Claude API key for query tagging and answers (or set ANTHROPIC_API_KEY)\n"
            "# claude_api_key: sk-ant-your-key-here\n\n"
        )
        config_file.write_text(header + yaml.dump(cfg, default_flow_style=False, sort_keys=False))
        console.print(f"  Created config: {config_file}")

    console.print("[bold green]✓ docsift initialized![/]")
    console.print("  Run: docsift ingest PATH")


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
@_handle_errors
def ingest(ctx, path):
    """Ingest a file or every supported file under a directory."""
    from .embeddings.embedder import get_embedding_client
    from .ingest.processor import DocumentProcessor, ingest_directory, ingest_file
    from .ingest.tagger import DocumentTagger

    config = _get_config(ctx)
    client = get_embedding_client(config)
    status = client.check_status()
    if not status.available:
        console.print(f"[red]✗ Embedding provider unavailable: {status.error}[/]")
        raise SystemExit(1)

    processor = DocumentProcessor.from_config(config, _repository(config), client)
    tagger = DocumentTagger.from_config(config)
    failed = []

    def report_failure(file_path, error):
        failed.append(file_path)
        console.print(f"  [red]✗ {file_path.name}: {error}[/]")

    if path.is_file():
        result = ingest_file(path, processor, tagger=tagger)
        results = [result] if result else []
    else:
        results = ingest_directory(path, processor, on_error=report_failure, tagger=tagger)

    if not results and not failed:
        console.print("[yellow]No files to process.[/]")
        return

    for r in results:
        console.print(f"[green]✓[/] {r.document.name} [dim](id {r.document.id}, {r.chunk_count} chunk(s))[/]")
        for d in r.duplicates.content_matches:
            console.print(f"    [yellow]same content as[/] {d.name} (id {d.id})")
        for d in r.duplicates.file_matches:
            console.print(f"    [yellow]same file as[/] {d.name} (id {d.id})")
        for n in r.near_duplicates:
            console.print(f"    [yellow]near duplicate of[/] {n.document_name} (id {n.document_id}, {n.similarity:.3f})")

    if failed:
        console.print(f"[red]✗ {len(failed)} file(s) failed[/]")
        raise SystemExit(1)


@cli.command()
@click.argument("document_id", type=int)
@click.pass_context
@_handle_errors
def reprocess(ctx, document_id):
    """Re-chunk and re-embed a document from its source file."""
    from .embeddings.embedder import get_embedding_client
    from .errors import DocumentNotFound
    from .ingest.processor import DocumentProcessor, ingest_file
    from .ingest.tagger import DocumentTagger

    config = _get_config(ctx)
    repository = _repository(config)
    doc = repository.get_document(document_id)
    if doc is None:
        raise DocumentNotFound(document_id)

    processor = DocumentProcessor.from_config(config, repository, get_embedding_client(config))
    result = ingest_file(Path(doc.path), processor, tagger=DocumentTagger.from_config(config))
    if result is None:
        console.print(f"[yellow]Unsupported file type: {doc.path}[/]")
        return
    console.print(f"[green]✓ Reprocessed {doc.name}: {result.chunk_count} chunk(s)[/]")


@cli.command()
@click.argument("query")
@click.option("--top-k", "-n", default=None, type=int, help="Number of results")
@click.option("--doc", "document_ids", multiple=True, type=int, help="Restrict to a document id (repeatable)")
@_filter_options
@click.pass_context
@_handle_errors
def search(ctx, query, top_k, document_ids, status, exclude_status, legal_hold, where):
    """Semantic search over ingested documents."""
    config = _get_config(ctx)
    engine = _search_engine(config)
    filters = _parse_filters(status, exclude_status, legal_hold, where)

    response = engine.search(query, document_ids=list(document_ids) or None, filters=filters, top_k=top_k)
    if response.tag_prefilter_used:
        console.print(f"[dim]Tag pre-filter: {', '.join(response.query_tags)}[/]")

    if response.is_empty:
        console.print("[yellow]No results found. Have you run 'docsift ingest'?[/]")
        return

    table = Table(title="Search Results")
    table.add_column("#", style="dim", width=3)
    table.add_column("Document", style="cyan")
    table.add_column("Section", justify="right", style="dim")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Preview", max_width=60)

    for i, r in enumerate(response.results, 1):
        preview = r.content[:80].replace("\n", " ")
        table.add_row(str(i), r.document_name, str(r.chunk_index + 1), f"{r.score:.3f}", preview)

    console.print(table)


@cli.command()
@click.argument("question")
@click.option("--top-k", "-n", default=None, type=int, help="Number of context chunks to retrieve")
@_filter_options
@click.pass_context
@_handle_errors
def ask(ctx, question, top_k, status, exclude_status, legal_hold, where):
    """Ask a question and get an answer synthesized from your documents."""
    from rich.markdown import Markdown
    from rich.panel import Panel

    from .qa import ask_question, get_llm_client

    config = _get_config(ctx)
    llm = get_llm_client(config)
    engine = _search_engine(config)
    filters = _parse_filters(status, exclude_status, legal_hold, where)

    console.print("[blue]Searching documents for context...[/]\n")
    result = ask_question(
        question, engine, llm, model=config.get("claude_model"), filters=filters, top_k=top_k
    )

    console.print(Panel(Markdown(result.answer), title="Answer", border_style="green"))
    if result.sources:
        console.print("\n[bold]Sources:[/]")
        for s in result.sources:
            console.print(f"  • {s.document_name} [dim]({s.max_score * 100:.1f}%)[/]")


@cli.command()
@click.argument("questions_file", type=click.Path(exists=True, path_type=Path))
@click.argument("approved_file", type=click.Path(exists=True, path_type=Path))
@click.option("--threshold", default=None, type=float, help="Minimum question similarity for reuse")
@click.pass_context
@_handle_errors
def questionnaire(ctx, questions_file, approved_file, threshold):
    """Reuse approved answers for a questionnaire.

    QUESTIONS_FILE has one question per line. APPROVED_FILE is a YAML or JSON
    list of {question, answer} entries.
    """
    from .embeddings.embedder import get_embedding_client
    from .query.questionnaire import ApprovedAnswer, match_questions

    config = _get_config(ctx)
    questions = [q.strip() for q in questions_file.read_text().splitlines() if q.strip()]
    entries = yaml.safe_load(approved_file.read_text()) or []
    approved = [ApprovedAnswer(e["question"], e["answer"]) for e in entries]
    if threshold is None:
        threshold = config.get("questionnaire", {}).get("match_threshold", 0.90)

    matches = match_questions(questions, approved, get_embedding_client(config), threshold)
    for q, m in zip(questions, matches):
        if m is None:
            console.print(f"[yellow]✎ draft needed[/] {q}")
        else:
            console.print(f"[green]✓ reuse ({m.similarity:.2f})[/] {q}\n    → {m.approved.answer}")


@cli.command()
@click.argument("document_id", type=int)
@click.option("--threshold", default=None, type=float, help="Near-duplicate similarity threshold")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable output")
@click.pass_context
@_handle_errors
def duplicates(ctx, document_id, threshold, as_json):
    """Show exact and near duplicates of a document."""
    from .dedup.detector import DuplicateDetector

    config = _get_config(ctx)
    detector = DuplicateDetector(
        _repository(config), config.get("dedup", {}).get("near_duplicate_threshold", 0.92)
    )
    report = detector.find_duplicates(document_id)
    near = detector.find_near_duplicates(document_id, threshold)

    if as_json:
        payload = report.as_dict()
        payload["near_duplicates"] = [{"document_id": n.document_id, "similarity": n.similarity} for n in near]
        click.echo(json.dumps(payload, indent=2))
        return

    if not report.has_matches and not near:
        console.print("[green]No duplicates found.[/]")
        return
    for d in report.content_matches:
        console.print(f"  [yellow]content[/] {d.name} (id {d.id})")
    for d in report.file_matches:
        console.print(f"  [yellow]file[/]    {d.name} (id {d.id})")
    for n in near:
        console.print(f"  [yellow]near[/]    {n.document_name} (id {n.document_id}, {n.similarity:.3f})")


@cli.command()
@click.argument("document_id", type=int)
@click.argument("tags", nargs=-1, required=True)
@click.option("--replace", is_flag=True, help="Replace existing tags instead of adding")
@click.pass_context
@_handle_errors
def tag(ctx, document_id, tags, replace):
    """Set topical tags on a document (used by the search pre-filter)."""
    from .errors import DocumentNotFound
    from .query.tags import normalize_tag

    repository = _repository(_get_config(ctx))
    doc = repository.get_document(document_id)
    if doc is None:
        raise DocumentNotFound(document_id)

    new_tags = [] if replace else list(doc.tags)
    for t in (normalize_tag(t) for t in tags):
        if t and t not in new_tags:
            new_tags.append(t)
    repository.update_document(document_id, tags=new_tags)
    console.print(f"[green]✓ {doc.name}: {', '.join(new_tags) or '(no tags)'}[/]")


@cli.command()
@click.argument("document_ids", nargs=-1, type=int)
@click.option("--all", "retag_all", is_flag=True, help="Re-tag every processed document")
@click.pass_context
@_handle_errors
def retag(ctx, document_ids, retag_all):
    """Re-run Claude auto-tagging on stored documents."""
    from .errors import ConfigError
    from .ingest.tagger import DocumentTagger, retag_document

    config = _get_config(ctx)
    tagger = DocumentTagger.from_config(config)
    if tagger is None:
        raise ConfigError("Auto-tagging needs a Claude API key and tagging.auto_tag_documents enabled")

    repository = _repository(config)
    if retag_all:
        document_ids = [d.id for d in repository.list_documents() if d.processed]
    if not document_ids:
        raise click.UsageError("Give document ids or --all")

    failed = 0
    for document_id in document_ids:
        metadata = retag_document(repository, tagger, document_id)
        if metadata.error:
            failed += 1
            console.print(f"  [red]✗ {document_id}: {metadata.error}[/]")
        else:
            console.print(
                f"[green]✓[/] {document_id}: {metadata.doc_type}, {metadata.sensitivity} "
                f"[dim]{', '.join(metadata.tags)}[/]"
            )
    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("document_id", type=int)
@click.pass_context
@_handle_errors
def delete(ctx, document_id):
    """Delete a document with its chunks and lineage."""
    _repository(_get_config(ctx)).delete_document(document_id)
    console.print(f"[green]✓ Deleted document {document_id}[/]")


@cli.command()
@click.pass_context
@_handle_errors
def documents(ctx):
    """List ingested documents."""
    config = _get_config(ctx)
    repository = _repository(config)
    docs = repository.list_documents()
    if not docs:
        console.print("[yellow]No documents yet.[/]")
        return

    counts = repository.chunk_counts([d.id for d in docs])
    table = Table(title="Documents")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Chunks", justify="right")
    table.add_column("Words", justify="right")
    table.add_column("State")
    table.add_column("Tags", max_width=40)

    for d in docs:
        state = "[green]processed[/]" if d.processed else "[red]failed[/]" if d.processing_failed else "[dim]pending[/]"
        table.add_row(str(d.id), d.name, str(counts.get(d.id, 0)), str(d.word_count), state, ", ".join(d.tags))
    console.print(table)


@cli.command()
@click.pass_context
@_handle_errors
def status(ctx):
    """Check the embedding provider and show store statistics."""
    from .embeddings.embedder import get_embedding_client

    config = _get_config(ctx)
    repository = _repository(config)
    client = get_embedding_client(config)
    provider = client.check_status()

    docs = repository.list_documents()
    console.print("\n[bold]docsift status[/]")
    if provider.available:
        console.print(f"  Embedding provider: [green]available[/] ({client.dimensions} dimensions)")
    else:
        console.print(f"  Embedding provider: [red]unavailable[/] ({provider.error})")
    console.print(f"  Documents: {len(docs)}")
    console.print(f"  Processed: {sum(d.processed for d in docs)}")
    console.print(f"  Failed: {sum(d.processing_failed for d in docs)}")
    console.print(f"  Embedded chunks: {repository.count_chunks()}")


if __name__ == "__main__":
    cli()
