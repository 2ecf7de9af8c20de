"""
Apollo Enrichment Studio command line
Enrich a CSV of contacts in batches, or serve the studio API and the enrichment function
"""
# -*- coding: utf-8 -*-
import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import pandas as pd
import typer
import uvicorn
from loguru import logger

from apollo_client import ApolloEnrichmentCall
from config import get_settings, reload_settings
from contacts import SAMPLE_CONTACTS, parse_contacts_csv, remove_duplicates
from enrichment_client import EnrichmentFunctionClient
from exporter import export_csv, export_filename
from models import (
    BatchCompleted,
    EnrichmentOptions,
    Progress,
    RunEvent,
    RunState,
)
from orchestrator import BatchEnrichmentOrchestrator, OrchestrationError, ValidationError

# CLI Application
app = typer.Typer(help="Apollo Enrichment Studio - batch contact enrichment")


def setup_logging(level: Optional[str] = None):
    """Configure loguru sinks for CLI and server use"""
    settings = get_settings()
    level = (level or settings.log_level).upper()
    logger.remove()  # Remove default handler

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        level=level,
        format=log_format,
        colorize=True,
        backtrace=settings.debug_mode,
        diagnose=settings.debug_mode
    )

    if settings.log_file_enabled:
        os.makedirs(settings.log_file_path, exist_ok=True)

        logger.add(
            f"{settings.log_file_path}/service.log",
            level=level,
            format=log_format,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="gz",
            colorize=False
        )
        logger.add(
            f"{settings.log_file_path}/errors.log",
            level="ERROR",
            format=log_format,
            rotation=settings.log_rotation,
            retention="90 days",
            compression="gz",
            colorize=False
        )

    logger.debug(f"Logging configured (level: {level})")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", "-l", help="Override LOG_LEVEL")
):
    """Apollo Enrichment Studio"""
    setup_logging(log_level)


def _print_event(event: RunEvent):
    if isinstance(event, BatchCompleted):
        if event.error:
            typer.echo(f"  batch {event.index}: failed - {event.error}", err=True)
        else:
            typer.echo(f"  batch {event.index}: {event.success_count} enriched, {event.fail_count} not found")
    elif isinstance(event, Progress):
        typer.echo(f"  progress: {event.completed_batches}/{event.total_batches} batches ({event.percent:.0f}%)")


@app.command()
def enrich(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="CSV file of contacts"),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k", help="Apollo API key (defaults to APOLLO_API_KEY)"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Contacts per enrichment call"),
    retry_attempts: Optional[int] = typer.Option(None, "--retries", "-r", help="Attempts per batch for retryable failures"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the enriched CSV"),
    direct: bool = typer.Option(False, "--direct", help="Call Apollo directly instead of the enrichment function"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", help="Enrichment function URL"),
    keep_duplicates: bool = typer.Option(False, "--keep-duplicates", help="Do not drop duplicate contacts"),
    reveal_personal_emails: bool = typer.Option(True, "--personal-emails/--no-personal-emails"),
    reveal_phone_numbers: bool = typer.Option(False, "--phones/--no-phones"),
    include_social_profiles: bool = typer.Option(True, "--social/--no-social"),
    include_employment_history: bool = typer.Option(True, "--history/--no-history")
):
    """Enrich a CSV of contacts batch by batch; Ctrl-C pauses after the current batch"""
    settings = get_settings()
    credential = api_key or settings.apollo_api_key or ""

    try:
        contacts = parse_contacts_csv(csv_path.read_text(encoding="utf-8-sig"))
    except ValueError as e:
        typer.echo(f"Error parsing CSV: {e}", err=True)
        raise typer.Exit(1)

    if not keep_duplicates and settings.exclude_duplicates:
        contacts, duplicates = remove_duplicates(contacts)
        typer.echo(f"Loaded {len(contacts)} unique contacts ({len(duplicates)} duplicates removed)")
    else:
        typer.echo(f"Loaded {len(contacts)} contacts")

    options = EnrichmentOptions(
        reveal_personal_emails=reveal_personal_emails,
        reveal_phone_numbers=reveal_phone_numbers,
        include_social_profiles=include_social_profiles,
        include_employment_history=include_employment_history,
    )
    output_path = output or Path(export_filename())

    async def run():
        enrichment_call = ApolloEnrichmentCall() if direct else EnrichmentFunctionClient(endpoint)
        orchestrator = BatchEnrichmentOrchestrator(enrichment_call, retry_attempts=retry_attempts)
        orchestrator.subscribe(_print_event)

        def request_pause():
            if orchestrator.pause():
                typer.echo("Pausing after the current batch...", err=True)

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, request_pause)
        except NotImplementedError:
            # Windows event loops do not support add_signal_handler
            signal.signal(signal.SIGINT, lambda signum, frame: loop.call_soon_threadsafe(request_pause))

        exit_code = 0
        try:
            context = await orchestrator.run(contacts, credential, batch_size, options)
        except ValidationError as e:
            typer.echo(f"Cannot start enrichment: {e}", err=True)
            raise typer.Exit(1)
        except OrchestrationError as e:
            typer.echo(f"Enrichment failed: {e}", err=True)
            context = e.context
            exit_code = 1
        finally:
            await enrichment_call.close()

        stats = context.stats
        typer.echo(
            f"Run {context.state.value}: {stats.processed} processed, {stats.successful} successful, "
            f"{stats.failed} failed, {stats.api_calls} API calls, {stats.credits_used} credits "
            f"(Quality Score: {stats.quality_score}%)"
        )
        if context.state == RunState.PAUSED:
            typer.echo(f"{len(context.remaining_contacts)} contacts were not processed", err=True)

        if context.results:
            output_path.write_text(export_csv(context.results), encoding="utf-8")
            typer.echo(f"Exported {len(context.results)} contacts to {output_path}")

        if exit_code:
            raise typer.Exit(exit_code)

    asyncio.run(run())


@app.command()
def sample(
    output: Path = typer.Argument(Path("sample_contacts.csv"), help="Where to write the sample CSV")
):
    """Write the built-in sample contacts as a CSV file"""
    df = pd.DataFrame(
        [contact.model_dump(by_alias=True) for contact in SAMPLE_CONTACTS],
        columns=["firstName", "lastName", "domain", "email"],
    )
    df.to_csv(output, index=False, encoding="utf-8")
    typer.echo(f"Wrote {len(SAMPLE_CONTACTS)} sample contacts to {output}")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port")
):
    """Run the studio API (dashboard backend plus enrichment function)"""
    # The studio session posts batches to its own function route, so it must see the bind address
    if host:
        os.environ["HOST"] = host
    if port:
        os.environ["PORT"] = str(port)
    settings = reload_settings()
    host = settings.host
    port = settings.port

    logger.info(f"Starting Apollo Enrichment Studio on {host}:{port} (enrichment endpoint {settings.enrichment_endpoint})")
    uvicorn.run(
        "studio_api:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        access_log=False
    )


@app.command()
def serve_function(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port")
):
    """Run only the enrichment function"""
    settings = get_settings()
    host = host or settings.host
    port = port or settings.function_port

    logger.info(f"Starting Apollo enrichment function on {host}:{port}")
    uvicorn.run(
        "enrich_function:app",
        host=host,
        port=port,
        log_level=settings.log_level.lower(),
        access_log=False
    )


if __name__ == "__main__":
    app()
