"""Command-line interface for the record client.

Provides `fetch`, `save`, `delete` and `query` commands over the configured
container and database scope, printing results as JSON (one object per line).

Retries are a caller decision: the client itself never retries, while
`--retries N` here re-runs a whole command on `TransportError` with
exponential backoff (tenacity).
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
from dotenv import find_dotenv, load_dotenv
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

# Load .env file if present (before any config access)
env_file = find_dotenv(usecwd=True)
if env_file:
    load_dotenv(env_file)
    logging.debug("Loaded environment from %s", env_file)

from .checkpoint import clear_cursor, load_cursor, store_cursor
from .config import Settings, get_settings
from .database import DatabaseClient, DatabaseScope
from .errors import CloudKitError, QueryError, TransportError
from .models.records import Asset, Record, Reference, ReferenceAction
from .operations import OperationType
from .query import Query, SortDescriptor, parse_predicate
from .responses import ItemResult

app = typer.Typer(help="Record service client CLI")
logger = logging.getLogger(__name__)

T = TypeVar("T")


# ------------------------------------------------------------------ helpers


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Asset):
        return {
            "downloadURL": value.download_url,
            "fileChecksum": value.file_checksum,
            "size": value.size,
        }
    if isinstance(value, Reference):
        return {"recordName": value.record_name, "action": value.action.value}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record_to_json(record: Record) -> Dict[str, Any]:
    return {
        "recordName": record.record_name,
        "recordType": record.record_type,
        "recordChangeTag": record.change_tag,
        "created": record.created.isoformat() if record.created else None,
        "fields": {k: _jsonable(v) for k, v in record.fields.items()},
    }


def result_to_json(result: ItemResult) -> Dict[str, Any]:
    if result.error is not None:
        return {
            "recordName": result.record_name,
            "error": type(result.error).__name__,
            "message": str(result.error),
        }
    if result.record is None:
        return {"recordName": result.record_name, "ok": True}
    return record_to_json(result.record)


def parse_field_value(raw: str) -> Any:
    """JSON literal when it parses (numbers, lists, quoted strings), else the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _split_assignment(option: str, text: str) -> tuple[str, str]:
    if "=" not in text:
        raise typer.BadParameter(f"expected NAME=VALUE, got {text!r}", param_hint=option)
    name, value = text.split("=", 1)
    return name.strip(), value


def parse_sort(text: str) -> SortDescriptor:
    """`field` sorts ascending, `-field` descending."""
    if text.startswith("-"):
        return SortDescriptor(text[1:], ascending=False)
    return SortDescriptor(text)


def parse_operation(value: Optional[str], *, delete: bool) -> Optional[OperationType]:
    if value is None:
        return None
    try:
        op = OperationType.lookup(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--operation") from e
    if op.is_delete != delete:
        raise typer.BadParameter(f"{op.value} is not allowed here", param_hint="--operation")
    return op


def _emit(obj: Dict[str, Any]) -> None:
    typer.echo(json.dumps(obj, ensure_ascii=False))


async def _with_retries(retries: int, call: Callable[[], Awaitable[T]]) -> T:
    if retries <= 0:
        return await call()
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=0.5, max=10),
        retry=retry_if_exception_type(TransportError),
        reraise=True,
    ):
        with attempt:
            return await call()


def _settings(ctx: typer.Context) -> Settings:
    settings: Settings = ctx.obj["settings"]
    if not settings.CLOUDKIT_CONTAINER:
        typer.echo("CLOUDKIT_CONTAINER is not configured", err=True)
        raise typer.Exit(code=2)
    return settings


def _run(ctx: typer.Context, body: Callable[[DatabaseClient], Awaitable[None]]) -> None:
    settings = _settings(ctx)
    retries: int = ctx.obj["retries"]

    async def _main() -> None:
        db = DatabaseClient.from_settings(settings)
        async with db.transport:
            await _with_retries(retries, lambda: body(db))

    try:
        asyncio.run(_main())
    except CloudKitError as e:
        typer.echo(f"error: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(code=1)


# ------------------------------------------------------------------ commands


@app.callback()
def main(
    ctx: typer.Context,
    retries: int = typer.Option(
        0, help="Retry a command this many times on transport errors (exponential backoff)"
    ),
    scope: Optional[DatabaseScope] = typer.Option(None, case_sensitive=False, help="Override CLOUDKIT_SCOPE"),
) -> None:
    """Configure logging and shared options."""
    settings = get_settings()
    if scope is not None:
        settings = settings.model_copy(update={"CLOUDKIT_SCOPE": scope.value})
    logging.basicConfig(level=settings.LOG_LEVEL)
    ctx.obj = {"settings": settings, "retries": retries}


@app.command()
def fetch(
    ctx: typer.Context,
    record_names: List[str] = typer.Argument(..., help="Record names to look up"),
    desired_key: Optional[List[str]] = typer.Option(None, help="Only return these fields"),
) -> None:
    """Fetch records by name."""

    async def body(db: DatabaseClient) -> None:
        for result in await db.fetch_records(record_names, desired_keys=desired_key or None):
            _emit(result_to_json(result))

    _run(ctx, body)


@app.command()
def delete(
    ctx: typer.Context,
    record_names: List[str] = typer.Argument(..., help="Record names to delete"),
    operation: Optional[str] = typer.Option(None, help="delete | forceDelete (default)"),
) -> None:
    """Delete records by name."""
    op = parse_operation(operation, delete=True)

    async def body(db: DatabaseClient) -> None:
        for result in await db.delete_records(record_names, op):
            _emit(result_to_json(result))

    _run(ctx, body)


@app.command()
def save(
    ctx: typer.Context,
    record_type: str = typer.Option(..., "--type", help="Record type"),
    record_name: Optional[str] = typer.Option(None, "--name", help="Record name (generated if omitted)"),
    change_tag: Optional[str] = typer.Option(None, help="Current change tag (for updates)"),
    field: Optional[List[str]] = typer.Option(None, help="NAME=VALUE, VALUE parsed as JSON when possible"),
    asset: Optional[List[str]] = typer.Option(None, help="NAME=PATH of a local file to upload"),
    reference: Optional[List[str]] = typer.Option(None, help="NAME=RECORD_NAME reference field"),
    operation: Optional[str] = typer.Option(None, help="create | update | forceUpdate | replace | forceReplace"),
) -> None:
    """Create or update one record."""
    op = parse_operation(operation, delete=False)
    record = Record(record_type, record_name, change_tag=change_tag)
    for text in field or []:
        name, value = _split_assignment("--field", text)
        record[name] = parse_field_value(value)
    for text in asset or []:
        name, value = _split_assignment("--asset", text)
        path = Path(value).expanduser()
        if not path.is_file():
            raise typer.BadParameter(f"{path} is not a file", param_hint="--asset")
        existing = record.get(name)
        if isinstance(existing, Asset):
            record[name] = [existing, Asset(file_path=path)]
        elif isinstance(existing, list):
            existing.append(Asset(file_path=path))
        else:
            record[name] = Asset(file_path=path)
    for text in reference or []:
        name, value = _split_assignment("--reference", text)
        record[name] = Reference(value, ReferenceAction.NONE)

    async def body(db: DatabaseClient) -> None:
        for result in await db.save_records([record], op):
            _emit(result_to_json(result))

    _run(ctx, body)


@app.command()
def query(
    ctx: typer.Context,
    record_type: str = typer.Argument(..., help="Record type to query"),
    where: str = typer.Option("", help='Predicate, e.g. \'age >= 18 AND name BEGINSWITH "Me"\''),
    sort: Optional[List[str]] = typer.Option(None, help="Sort field; prefix with '-' for descending"),
    limit: Optional[int] = typer.Option(None, help="Results per page (max 200)"),
    desired_key: Optional[List[str]] = typer.Option(None, help="Only return these fields"),
    all_pages: bool = typer.Option(False, "--all", help="Follow cursors until the last page"),
    cursor_file: Optional[str] = typer.Option(
        None, help="Persist the continuation cursor here so an interrupted --all run resumes"
    ),
) -> None:
    """Run a query, optionally paging through every result."""
    try:
        predicate = parse_predicate(where)
    except QueryError as e:
        raise typer.BadParameter(str(e), param_hint="--where") from e
    q = Query(record_type, predicate, [parse_sort(s) for s in sort or []])
    settings = _settings(ctx)
    page_size = limit if limit is not None else settings.QUERY_PAGE_SIZE

    async def body(db: DatabaseClient) -> None:
        cursor = load_cursor(cursor_file) if cursor_file else None
        if cursor is not None:
            logger.info("Resuming query from cursor in %s", cursor_file)
        pages = 0
        while True:
            if cursor is None:
                page = await db.perform_query(q, desired_keys=desired_key or None, results_limit=page_size)
            else:
                page = await db.fetch_more(q, cursor, desired_keys=desired_key or None, results_limit=page_size)
            pages += 1
            for result in page.results:
                _emit(result_to_json(result))
            cursor = page.cursor
            if cursor_file:
                if cursor is None:
                    clear_cursor(cursor_file)
                else:
                    store_cursor(cursor_file, cursor)
            if cursor is None or not all_pages:
                break
        if cursor is not None:
            _emit({"continuationMarker": cursor.continuation_marker})
        logger.info("query %s finished after %d page(s)", record_type, pages)

    _run(ctx, body)


if __name__ == "__main__":  # pragma: no cover
    app()
