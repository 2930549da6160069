"""
structgen: operator console.

Usage:
    python -m structgen.main models
    python -m structgen.main generate --schema myapp.schemas:Lesson --prompt "Teach fractions" --model claude-haiku-4-5-20251001
    python -m structgen.main generate --schema myapp.schemas:Quiz --prompt-file prompt.txt --model mock --type quiz
    python -m structgen.main logs --outcome failed --limit 20
    python -m structgen.main show <log-id>
    python -m structgen.main cleanup
    python -m structgen.main init-db
"""

from __future__ import annotations

# Load .env before any other imports so no provider SDK captures stale env keys
import structgen.config  # noqa: F401, E402

import argparse
import asyncio
import importlib
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from structgen.admin import GenerationLogAdmin
from structgen.config import get_settings
from structgen.errors import GenerationError
from structgen.generation_logger import GenerationLogContext
from structgen.generator import StructuredGenerator
from structgen.log_store import GenerationLogFilters, GenerationLogStore
from structgen.model_resolver import MODEL_REGISTRY, credentials_from_settings
from structgen.models import GenerationOutcome, GenerationType
from structgen.observability import metrics as obs_metrics

_CUSTOM_THEME = Theme({
    "outcome.success_layer0":  "bold #22c55e",
    "outcome.repaired_layer1": "bold #0ea5e9",
    "outcome.repaired_layer2": "bold #f59e0b",
    "outcome.failed":          "bold #dc2626",
    "primary":                 "#ea580c",
})

console = Console(theme=_CUSTOM_THEME, highlight=False)

# Events that get a stage marker instead of a plain log line
_STAGE_EVENTS: dict[str, str] = {
    "generation_started":   "Generation",
    "recovery_layer1_done": "Layer 1 · Coercion",
    "recovery_layer2_done": "Layer 2 · Repack",
}


def _level_filter(min_level: str):
    threshold = logging.getLevelName(min_level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    def _filter(logger_: object, method: str, event_dict: dict) -> dict:  # noqa: ARG001
        level = logging.getLevelName(event_dict.get("level", "info").upper())
        if isinstance(level, int) and level < threshold:
            raise structlog.DropEvent()
        return event_dict

    return _filter


class _RichStructlogRenderer:
    """Custom structlog processor that renders log lines via Rich."""

    _SKIP_KEYS = frozenset({"event", "level", "_record"})

    def __call__(self, logger_: object, method: str, event_dict: dict) -> str:  # noqa: ARG002
        event = event_dict.get("event", "")
        level = event_dict.get("level", "info").lower()

        if event in _STAGE_EVENTS:
            detail = "  ".join(
                f"[#64748b]{k}[/#64748b]=[#94a3b8]{v}[/#94a3b8]"
                for k, v in event_dict.items()
                if k not in self._SKIP_KEYS
            )
            console.print(f"  [bold #ea580c]▶[/bold #ea580c] [bold #e2e8f0]{_STAGE_EVENTS[event]}[/bold #e2e8f0]  {detail}")
            raise structlog.DropEvent()

        kv_parts = []
        for k, v in event_dict.items():
            if k in self._SKIP_KEYS:
                continue
            vs = str(v)
            if len(vs) > 120:
                vs = vs[:117] + "…"
            if k in ("outcome", "wrapper_type", "repack_model"):
                kv_parts.append(f"[#94a3b8]{k}[/#94a3b8]=[#ea580c]{vs}[/#ea580c]")
            else:
                kv_parts.append(f"[#64748b]{k}[/#64748b]=[#94a3b8]{vs}[/#94a3b8]")
        kv_str = "  ".join(kv_parts)

        if level == "warning":
            prefix = "[bold #f59e0b]⚠[/bold #f59e0b]"
            ev_fmt = f"[bold #f59e0b]{event}[/bold #f59e0b]"
        elif level in ("error", "critical"):
            prefix = "[bold #dc2626]✗[/bold #dc2626]"
            ev_fmt = f"[bold #dc2626]{event}[/bold #dc2626]"
        elif level == "debug":
            prefix = "[#64748b]·[/#64748b]"
            ev_fmt = f"[#64748b]{event}[/#64748b]"
        else:
            prefix = "[#ea580c]▪[/#ea580c]"
            ev_fmt = f"[bold #e2e8f0]{event}[/bold #e2e8f0]"

        console.print(f"  {prefix} {ev_fmt}  {kv_str}")
        raise structlog.DropEvent()


def configure_logging(level: Optional[str] = None) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            _level_filter(level or get_settings().observability.log_level),
            _RichStructlogRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def load_schema(path: str) -> type[BaseModel]:
    """Import a pydantic model from 'package.module:ClassName'."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Schema must look like 'module:ClassName', got {path!r}")
    module = importlib.import_module(module_name)
    schema = getattr(module, attr, None)
    if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
        raise ValueError(f"{path!r} is not a pydantic model")
    return schema


def _open_store() -> GenerationLogStore:
    store = GenerationLogStore.from_url(get_settings().generation_log.database_url)
    store.create_schema()
    return store


def _outcome_markup(outcome: str) -> str:
    known = {o.value for o in GenerationOutcome}
    return f"[outcome.{outcome}]{outcome}[/outcome.{outcome}]" if outcome in known else outcome


# ── Commands ──


def cmd_models() -> None:
    creds = credentials_from_settings()
    table = Table(title="Registered Models", border_style="#ea580c", title_style="bold #ea580c")
    table.add_column("Model", style="bold #e2e8f0")
    table.add_column("Provider", style="#94a3b8")
    table.add_column("Tier", style="#94a3b8")
    table.add_column("$/1K in", justify="right")
    table.add_column("$/1K out", justify="right")
    table.add_column("Key", justify="center")
    for m in MODEL_REGISTRY:
        has_key = bool(creds.for_provider(m.provider))
        table.add_row(
            m.id,
            m.provider.value,
            m.tier.value,
            f"{m.input_cost_per_1k:.5f}",
            f"{m.output_cost_per_1k:.5f}",
            "[green]✓[/green]" if has_key else "[#64748b]—[/#64748b]",
        )
    console.print(table)


async def cmd_generate(args: argparse.Namespace) -> int:
    settings = get_settings()
    if settings.observability.metrics_enabled:
        obs_metrics.start_server(port=settings.observability.metrics_port)

    schema = load_schema(args.schema)
    prompt = Path(args.prompt_file).read_text(encoding="utf-8") if args.prompt_file else args.prompt
    if not prompt:
        console.print("[red]Provide --prompt or --prompt-file.[/red]")
        return 2

    generator = StructuredGenerator(store=_open_store(), settings=settings)
    context = GenerationLogContext(
        generation_type=args.type,
        user_id=args.user,
        course_id=args.course,
        lesson_id=args.lesson,
        language=args.language,
        difficulty=args.difficulty,
    )
    try:
        output = await generator.generate(
            prompt=prompt,
            schema=schema,
            context=context,
            credentials=credentials_from_settings(settings),
            model_id=args.model,
        )
    except GenerationError as e:
        console.print(Panel(str(e), title=f"[bold #dc2626]{type(e).__name__}[/bold #dc2626]", border_style="#dc2626"))
        return 1

    console.print(
        Panel(
            json.dumps(output.value.model_dump(mode="json"), indent=2),
            title=f"{schema.__name__}  ·  {_outcome_markup(output.outcome.value)}",
            subtitle=f"model={output.model_id}" + (f"  repack={output.repack_model_id}" if output.repack_model_id else ""),
            border_style="#ea580c",
        )
    )
    return 0


def cmd_logs(args: argparse.Namespace) -> None:
    admin = GenerationLogAdmin(_open_store())
    filters = GenerationLogFilters(
        generation_type=args.type,
        outcome=args.outcome,
        model_id=args.model,
        course_id=args.course,
        date_from=args.date_from,
        date_to=args.date_to,
        limit=args.limit,
        offset=args.offset,
    )
    page = admin.list_logs(filters)

    table = Table(
        title=f"Generation Logs ({page.offset + 1}-{page.offset + len(page.logs)} of {page.total})",
        border_style="#ea580c",
        title_style="bold #ea580c",
    )
    table.add_column("Created", style="#94a3b8")
    table.add_column("Id", style="#64748b")
    table.add_column("Type")
    table.add_column("Schema")
    table.add_column("Model")
    table.add_column("Outcome")
    table.add_column("ms", justify="right")
    table.add_column("Wrapper")
    for row in page.logs:
        table.add_row(
            str(row["created_at"])[:19],
            row["id"][:8],
            row["generation_type"],
            row["schema_name"],
            row["model_id"],
            _outcome_markup(row["outcome"]),
            str(row["duration_ms"]),
            row["wrapper_type"],
        )
    console.print(table)

    if page.stats:
        st = Table(title="Outcomes", border_style="#64748b", title_style="#94a3b8")
        st.add_column("Outcome")
        st.add_column("Count", justify="right")
        for outcome, count in sorted(page.stats.items()):
            st.add_row(_outcome_markup(outcome), str(count))
        console.print(st)


def cmd_show(args: argparse.Namespace) -> int:
    record = GenerationLogAdmin(_open_store()).get_log(args.log_id)
    if record is None:
        console.print(f"[red]Log not found: {args.log_id}[/red]")
        return 1
    console.print(Panel(json.dumps(record, indent=2, default=str), title=f"Log {args.log_id}", border_style="#ea580c"))
    return 0


def cmd_cleanup() -> None:
    redacted = GenerationLogAdmin(_open_store()).cleanup()
    console.print(f"[green]Redacted {redacted} expired row(s).[/green]")


def cmd_init_db() -> None:
    _open_store()
    console.print(f"[green]Schema ready at {get_settings().generation_log.database_url}[/green]")


def _parse_iso(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}") from e


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Resilient structured generation")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("models", help="List registered models and key availability")

    gen = sub.add_parser("generate", help="Generate one structured object")
    gen.add_argument("--schema", required=True, help="Target pydantic model as module:ClassName")
    gen.add_argument("--prompt", help="Prompt text")
    gen.add_argument("--prompt-file", help="Read the prompt from a file")
    gen.add_argument("--model", default=None, help="Model id (default: GENERATION_MODEL; 'mock' needs no key)")
    gen.add_argument(
        "--type",
        default=GenerationType.COURSE.value,
        choices=[t.value for t in GenerationType],
        help="Generation type recorded in the audit log",
    )
    gen.add_argument("--user", default=None)
    gen.add_argument("--course", default=None)
    gen.add_argument("--lesson", default=None)
    gen.add_argument("--language", default=None)
    gen.add_argument("--difficulty", default=None)

    logs = sub.add_parser("logs", help="List audit log rows (sweeps expired text first)")
    logs.add_argument("--type", default=None)
    logs.add_argument("--outcome", default=None, choices=[o.value for o in GenerationOutcome])
    logs.add_argument("--model", default=None)
    logs.add_argument("--course", default=None)
    logs.add_argument("--from", dest="date_from", type=_parse_iso, default=None)
    logs.add_argument("--to", dest="date_to", type=_parse_iso, default=None)
    logs.add_argument("--limit", type=int, default=50)
    logs.add_argument("--offset", type=int, default=0)

    show = sub.add_parser("show", help="Show one audit log row in full")
    show.add_argument("log_id")

    sub.add_parser("cleanup", help="Redact sensitive text of expired rows")
    sub.add_parser("init-db", help="Create the audit log table")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "models":
        cmd_models()
    elif args.command == "generate":
        return asyncio.run(cmd_generate(args))
    elif args.command == "logs":
        cmd_logs(args)
    elif args.command == "show":
        return cmd_show(args)
    elif args.command == "cleanup":
        cmd_cleanup()
    elif args.command == "init-db":
        cmd_init_db()
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
