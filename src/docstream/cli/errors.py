"""docstream rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from docstream.cli.errors import err_no_api_key
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from docstream.errors import (
    AdapterConfigError,
    AdapterError,
    ConfigError,
    DocstreamError,
    SourceBusy,
    SourceNotFound,
    TransientAdapterError,
)


def err_no_api_key(detail: str) -> str:
    """Missing provider key; *detail* is the EnvironmentError text naming the variable."""
    return (
        f"[red]Error:[/] {detail}\n"
        "  API keys are read from the environment, never from docstream.yaml."
    )


def err_config(exc: ConfigError) -> str:
    return (
        f"[red]Error:[/] Invalid configuration: {exc}\n"
        "  Fix docstream.yaml (or the file passed with --config) and retry."
    )


def err_source_busy(source_id: str, detail: str) -> str:
    return (
        f"[yellow]Skipped:[/] fetch for '{source_id}' did not run ({detail}).\n"
        "  Retry once the running fetch has finished."
    )


def err_source_disabled(source_id: str, detail: str) -> str:
    return (
        f"[red]Error:[/] Source '{source_id}' is disabled: {detail}\n"
        f"  Fix the cause, then run:  docstream sources enable {source_id}"
    )


def err_adapter_config(source_id: str, detail: str) -> str:
    return (
        f"[red]Error:[/] Source '{source_id}' is misconfigured: {detail}\n"
        "  Check its config block and credentials (e.g. export ZULIP_API_KEY=...)."
    )


def err_transient(source_id: str, detail: str) -> str:
    return (
        f"[yellow]Warning:[/] Fetch for '{source_id}' failed temporarily: {detail}\n"
        "  The source stays enabled; the next run retries."
    )


def err_no_docs_path() -> str:
    return (
        "[red]Error:[/] No documentation location configured.\n"
        "  Add to docstream.yaml:\n"
        "    docs:\n"
        "      path: docs\n"
        "      kind: directory   # or git"
    )


def describe(exc: DocstreamError, source_id: str | None = None) -> str:
    """Pick the matching message for *exc*."""
    sid = source_id or getattr(exc, "source_id", None) or "?"
    if isinstance(exc, SourceNotFound):
        return f"[red]Error:[/] {exc}\n  Run:  docstream sources list"
    if isinstance(exc, SourceBusy):
        return err_source_busy(sid, str(exc))
    if isinstance(exc, AdapterConfigError):
        return err_adapter_config(sid, str(exc))
    if isinstance(exc, TransientAdapterError):
        return err_transient(sid, str(exc))
    if isinstance(exc, AdapterError):
        return err_source_disabled(sid, str(exc))
    if isinstance(exc, ConfigError):
        return err_config(exc)
    return f"[red]Error:[/] {exc}"
