"""Command line interface for the freeflow dictation tool."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from . import config as config_mod
from .config import ConfigError
from .context import fallback_context
from .errors import FreeflowError, PersistenceError, format_error
from .models import Config, HistoryEntry, new_id, utcnow
from .postprocessor import PostProcessingClient
from .storage import HistoryStore
from .transcriber import TranscriptionClient, ValidationCache, validate_api_key

app = typer.Typer(add_completion=False, help="Push-to-talk dictation with context-aware cleanup.")
console = Console()


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _open_store(cfg: Config) -> HistoryStore:
    try:
        return HistoryStore(max_count=cfg.max_history_count)
    except PersistenceError as exc:
        typer.secho(f"History unavailable: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _require_api_key(cfg: Config) -> None:
    if not cfg.api_key:
        typer.secho(
            f"No API key configured. Run `freeflow login` or set {config_mod.API_KEY_ENV}.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)


def _format_timestamp(entry: HistoryEntry) -> str:
    return entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M")


def _preview(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 1] + "…"


def _configure_logging(cfg: Optional[Config], verbose: bool) -> None:
    level_name = "DEBUG" if verbose else (cfg.log_level if cfg else "WARNING")
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo(f"freeflow v{__version__}")
        raise typer.Exit()

    try:
        cfg: Optional[Config] = config_mod.load_config()
    except ConfigError:
        cfg = None
    _configure_logging(cfg, verbose)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def dictate() -> None:  # pragma: no cover - interactive
    """Record from the microphone. Press Enter to start and stop, q to quit."""

    cfg = _load_config()
    _require_api_key(cfg)
    try:
        orchestrator = _build_orchestrator(cfg)
    except RuntimeError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    console.print("Press [bold]Enter[/bold] to start or stop recording, [bold]q[/bold] then Enter to quit.")
    try:
        asyncio.run(_dictate_loop(orchestrator))
    except KeyboardInterrupt:
        pass


def _build_orchestrator(cfg: Config):  # pragma: no cover - real adapters
    from .context import ContextService
    from .desktop import DesktopEffects, default_inspector
    from .orchestrator import SessionOrchestrator
    from .permissions import default_checker
    from .recorder import SoundDeviceCapture

    inspector = default_inspector()
    permissions = default_checker()
    return SessionOrchestrator(
        config=cfg,
        capture=SoundDeviceCapture(permissions=permissions),
        collector=ContextService(cfg, inspector),
        transcriber=TranscriptionClient.from_config(cfg),
        post_processor=PostProcessingClient.from_config(cfg),
        history=_open_store(cfg),
        permissions=permissions,
        effects=DesktopEffects(console),
        frontmost_app=inspector.frontmost_app_name,
    )


async def _dictate_loop(orchestrator) -> None:  # pragma: no cover - interactive
    try:
        while True:
            line = await asyncio.to_thread(input)
            if line.strip().lower() in {"q", "quit", "exit"}:
                break
            try:
                await orchestrator.toggle(trigger="keyboard")
            except FreeflowError as exc:
                logging.debug("Toggle refused: %s", exc)
    finally:
        await orchestrator.shutdown()


@app.command()
def transcribe(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    post_process: bool = typer.Option(True, "--post-process/--raw", help="Clean up the transcript with the LLM."),
    save: bool = typer.Option(True, "--save/--no-save", help="Record the result in history."),
    vocabulary: Optional[str] = typer.Option(None, "--vocabulary", help="Extra terms, comma separated."),
) -> None:
    """Transcribe an audio file without recording."""

    cfg = _load_config()
    _require_api_key(cfg)
    terms = ", ".join(part for part in (cfg.custom_vocabulary, vocabulary or "") if part)

    try:
        entry = asyncio.run(_transcribe_file(cfg, audio, post_process, terms))
    except FreeflowError as exc:
        typer.secho(format_error(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(entry.final_transcript or "(nothing to transcribe)")
    if not save:
        return
    store = _open_store(cfg)
    try:
        ref = store.import_audio(audio)
        entry = replace(entry, audio_file_ref=ref)
        store.discard_audio(store.append(entry, cfg.max_history_count))
    except PersistenceError as exc:
        typer.secho(f"Failed to save history: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho(f"\nSaved history entry {entry.id[:8]}.", fg=typer.colors.BLUE)


async def _transcribe_file(cfg: Config, audio: Path, post_process: bool, terms: str) -> HistoryEntry:
    raw = await TranscriptionClient.from_config(cfg).transcribe(audio)
    context = fallback_context()
    final, prompt, status = raw, None, "Post-processing skipped"
    if post_process and raw.strip():
        try:
            result = await PostProcessingClient.from_config(cfg).post_process(raw, context.activity_summary, terms)
        except FreeflowError as exc:
            logging.warning("Post-processing failed: %s", exc)
            status = "Post-processing failed, using raw transcript"
        else:
            final, prompt, status = result.transcript, result.prompt, "Post-processing succeeded"
    if not final.strip():
        status = "Nothing to transcribe"
    return HistoryEntry(
        id=new_id(),
        timestamp=utcnow(),
        raw_transcript=raw,
        final_transcript=final.strip(),
        post_processing_prompt=prompt,
        context_summary=context.activity_summary,
        context_prompt=None,
        screenshot_ref=None,
        screenshot_status=context.screenshot_status,
        processing_status=status,
        debug_status=f"trigger=file; source={audio.name}",
        custom_vocabulary=terms,
    )


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum number of entries to list."),
) -> None:
    """List recent dictations, newest first."""

    cfg = _load_config()
    entries = _open_store(cfg).load_all()[: max(limit, 0)]
    if not entries:
        typer.echo("No history yet. Use `freeflow dictate` or `freeflow transcribe` to create some.")
        return

    table = Table("ID", "When", "Status", "Transcript")
    for entry in entries:
        style = "red" if entry.is_error else None
        table.add_row(
            entry.id[:8],
            _format_timestamp(entry),
            entry.processing_status,
            _preview(entry.final_transcript or entry.raw_transcript),
            style=style,
        )
    console.print(table)


@app.command()
def show(
    entry_id: str = typer.Argument(..., help="History entry id or unique prefix."),
    prompts: bool = typer.Option(False, "--prompts", help="Include the prompts sent to the models."),
) -> None:
    """Show one history entry."""

    cfg = _load_config()
    store = _open_store(cfg)
    try:
        entry = store.find(entry_id)
    except PersistenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc

    typer.secho(f"Entry: {entry.id}", fg=typer.colors.BLUE)
    typer.echo(f"When: {_format_timestamp(entry)}")
    typer.echo(f"Status: {entry.processing_status}")
    typer.echo(f"Context: {entry.context_summary}")
    typer.echo(f"Screenshot: {entry.screenshot_status}")
    if entry.audio_file_ref:
        typer.echo(f"Audio: {store.audio_path(entry.audio_file_ref)}")
    if entry.custom_vocabulary:
        typer.echo(f"Vocabulary: {entry.custom_vocabulary}")
    typer.echo("\nRaw transcript:\n" + (entry.raw_transcript or "-"))
    typer.secho("\nFinal transcript:\n" + (entry.final_transcript or "-"), fg=typer.colors.GREEN)
    if prompts:
        typer.echo("\nPost-processing prompt:\n" + (entry.post_processing_prompt or "-"))
        typer.echo("\nContext prompt:\n" + (entry.context_prompt or "-"))
        typer.echo("\nDebug:\n" + entry.debug_status)


@app.command()
def delete(
    entry_id: str = typer.Argument(..., help="History entry id or unique prefix."),
) -> None:
    """Delete one history entry and its audio."""

    cfg = _load_config()
    store = _open_store(cfg)
    try:
        entry = store.find(entry_id)
        store.discard_audio([store.delete(entry.id)])
    except PersistenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho(f"History entry {entry.id[:8]} deleted.", fg=typer.colors.BLUE)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete every history entry and its audio."""

    if not yes:
        typer.confirm("Delete all history?", abort=True)
    cfg = _load_config()
    store = _open_store(cfg)
    try:
        store.discard_audio(store.clear_all())
    except PersistenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("History cleared.", fg=typer.colors.BLUE)


@app.command()
def config(
    api_base_url: Optional[str] = typer.Option(None, help="Base URL of the OpenAI-compatible API."),
    transcription_model: Optional[str] = typer.Option(None, help="Speech-to-text model id."),
    post_processing_model: Optional[str] = typer.Option(None, help="Chat model used to clean transcripts."),
    context_model: Optional[str] = typer.Option(None, help="Chat model used to summarise context."),
    vision_model: Optional[str] = typer.Option(None, help="Vision model used when a screenshot is attached."),
    custom_vocabulary: Optional[str] = typer.Option(None, help="Terms to spell exactly (comma or newline separated)."),
    insert_destination: Optional[str] = typer.Option(None, help="Where to place recognised text (paste or clipboard)."),
    microphone_device: Optional[str] = typer.Option(None, help="Input device name or index."),
    max_history_count: Optional[int] = typer.Option(None, help="Number of history entries to keep."),
    transcription_timeout: Optional[float] = typer.Option(None, help="Seconds to wait for a transcript."),
    capture_screenshot: Optional[bool] = typer.Option(
        None,
        "--capture-screenshot/--no-capture-screenshot",
        help="Attach a screenshot of the active window to context summaries.",
    ),
    abort_on_screen_permission: Optional[bool] = typer.Option(
        None,
        "--abort-on-screen-permission/--continue-without-screenshot",
        help="Fail the session when screen recording permission is missing.",
    ),
    log_level: Optional[str] = typer.Option(None, help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "api_base_url": api_base_url,
            "transcription_model": transcription_model,
            "post_processing_model": post_processing_model,
            "context_model": context_model,
            "vision_model": vision_model,
            "custom_vocabulary": custom_vocabulary,
            "insert_destination": insert_destination,
            "microphone_device": microphone_device,
            "max_history_count": max_history_count,
            "transcription_timeout": transcription_timeout,
            "capture_screenshot": capture_screenshot,
            "abort_on_screen_permission": abort_on_screen_permission,
            "log_level": log_level.upper() if log_level else None,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        data = asdict(cfg)
        if data.get("api_key"):
            data["api_key"] = "****" + data["api_key"][-4:]
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def login(
    api_key: Optional[str] = typer.Option(
        None,
        "--api-key",
        help="API key for the transcription and chat endpoints.",
        prompt=True,
        hide_input=True,
    ),
    skip_validation: bool = typer.Option(False, "--skip-validation", help="Store the key without checking it."),
) -> None:
    """Validate and persist the API key."""

    key = (api_key or "").strip()
    if not key:
        typer.secho("An API key is required.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if not skip_validation:
        cfg = _load_config()
        if not asyncio.run(validate_api_key(key, cfg.api_base_url)):
            typer.secho("The API key was rejected.", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

    try:
        config_mod.update_config(api_key=key)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("API key stored.", fg=typer.colors.BLUE)


@app.command()
def check() -> None:
    """Report permissions and API key status."""

    from .permissions import ACCESSIBILITY, MICROPHONE, SCREEN_RECORDING, default_checker

    cfg = _load_config()
    problems = 0
    try:
        checker = default_checker()
        for permission in (MICROPHONE, ACCESSIBILITY, SCREEN_RECORDING):
            granted = checker.is_granted(permission)
            problems += 0 if granted or permission == SCREEN_RECORDING else 1
            mark = "[green]granted[/green]" if granted else "[red]missing[/red]"
            console.print(f"{permission.replace('_', ' ').title()}: {mark}")
    except RuntimeError as exc:
        console.print(f"[yellow]Permission checks unavailable:[/yellow] {exc}")

    if not cfg.api_key:
        console.print("API key: [red]not configured[/red]")
        problems += 1
    elif asyncio.run(validate_api_key(cfg.api_key, cfg.api_base_url, cache=ValidationCache())):
        console.print("API key: [green]valid[/green]")
    else:
        console.print("API key: [red]rejected or unreachable[/red]")
        problems += 1

    if problems:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()
