"""
Command-line interface for codebox.

Runs a source file through the execution engine and exposes the
maintenance operations (status, doctor, image pulls, orphan sweep).
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from .core.config import ConfigManager, EngineConfig
from .core.exceptions import CodeboxError, ExecutionError
from .core.logging import setup_logging
from .execution.engine import CodeExecutionEngine
from .languages.registry import LanguageDescriptor, get_language, list_languages, runnable_languages
from .languages.templates import available_templates, get_template
from .sandbox.diagnostics import run_doctor

console = Console()
err_console = Console(stderr=True)


def _load_config(args: argparse.Namespace) -> EngineConfig:
    if args.config:
        return EngineConfig.load_from_file(Path(args.config))
    return ConfigManager().config


def _guess_language(path: Path) -> LanguageDescriptor | None:
    extension = path.suffix.lstrip(".").lower()
    for descriptor in runnable_languages():
        if descriptor.extension == extension:
            return descriptor
    return None


def cmd_run(args: argparse.Namespace) -> int:
    path = Path(args.file)
    try:
        source = path.read_text(encoding="utf-8")
    except OSError as exc:
        err_console.print(f"[red]Cannot read {path}: {exc}[/red]")
        return 2

    if args.language:
        language_id = args.language
    else:
        guessed = _guess_language(path)
        if guessed is None:
            err_console.print(f"[red]Cannot infer language from '{path.name}'. Use --language.[/red]")
            return 2
        language_id = guessed.id

    stdin = None
    if args.input:
        try:
            stdin = Path(args.input).read_text(encoding="utf-8")
        except OSError as exc:
            err_console.print(f"[red]Cannot read input {args.input}: {exc}[/red]")
            return 2

    engine = CodeExecutionEngine(_load_config(args))
    try:
        result = engine.execute(
            language_id,
            source,
            timeout_ms=args.timeout,
            caller_id=args.caller,
            stdin=stdin,
        )
    finally:
        engine.close()

    if args.json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        if result.output:
            console.print(result.output, markup=False, highlight=False)
        if result.error:
            err_console.print(result.error, markup=False, highlight=False, style="red")
        err_console.print(
            f"[dim]{result.language} via {result.path.value}: {result.status.value}, "
            f"exit {result.exit_code}, {result.execution_time_ms}ms[/dim]"
        )

    if not result.ok:
        return 1
    return 0


def cmd_languages(args: argparse.Namespace) -> int:
    descriptors = runnable_languages() if args.runnable else list_languages()
    if args.json:
        console.print_json(json.dumps([d.summary() for d in descriptors]))
        return 0

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Ext", style="dim")
    table.add_column("Runnable")
    table.add_column("Category", style="dim")
    table.add_column("Image", style="dim")
    for d in descriptors:
        table.add_row(
            d.id,
            d.name,
            d.extension,
            "[green]yes[/green]" if d.runnable else "[dim]no[/dim]",
            d.category,
            d.image or "",
        )
    console.print(table)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    engine = CodeExecutionEngine(_load_config(args))
    try:
        status = engine.system_status()
    finally:
        engine.close()

    if args.json:
        console.print_json(json.dumps(status, default=str))
        return 0

    table = Table(show_header=False)
    table.add_column("key", style="dim", width=20)
    table.add_column("value")
    table.add_row(
        "backend",
        "[green]available[/green]" if status["backendAvailable"] else "[red]unavailable[/red]",
    )
    table.add_row("fallback", "enabled" if status["fallbackAvailable"] else "disabled")
    for key, value in (status.get("backendInfo") or {}).items():
        table.add_row(key, str(value))
    console.print(table)
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    checks = run_doctor(_load_config(args))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Check", style="cyan", width=20)
    table.add_column("Status", width=8)
    table.add_column("Details", style="dim")
    table.add_column("Fix", style="yellow")
    for check in checks:
        if check.status == "pass":
            status = "[green]PASS[/green]"
        elif check.status == "warn":
            status = "[yellow]WARN[/yellow]"
        else:
            status = "[red]FAIL[/red]"
        table.add_row(check.name, status, check.detail, check.recommendation or "")
    console.print(table)

    failures = [check for check in checks if check.status == "fail"]
    if failures:
        console.print(f"[yellow]Doctor found {len(failures)} blocking issue(s).[/yellow]")
        return 1
    console.print("[green]All checks passed.[/green]")
    return 0


def cmd_pull_images(args: argparse.Namespace) -> int:
    engine = CodeExecutionEngine(_load_config(args))
    try:
        results = engine.pull_images()
    finally:
        engine.close()

    failed = 0
    for image, (ok, detail) in results.items():
        if ok:
            console.print(f"[green]✓[/green] {image}")
        else:
            failed += 1
            console.print(f"[red]✗[/red] {image}: {detail}")
    return 1 if failed else 0


def cmd_sweep(args: argparse.Namespace) -> int:
    engine = CodeExecutionEngine(_load_config(args))
    try:
        removed = engine.sweep_orphans(include_running=args.all)
    finally:
        engine.close()
    console.print(f"Removed {len(removed)} orphaned sandbox(es).")
    return 0


def cmd_template(args: argparse.Namespace) -> int:
    descriptor = get_language(args.language)
    if args.list:
        for kind in available_templates(descriptor.id):
            console.print(kind)
        return 0
    source = get_template(descriptor.id, args.kind or "hello")
    if args.raw:
        sys.stdout.write(source)
    else:
        console.print(Syntax(source, descriptor.extension, theme="monokai"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codebox",
        description="codebox: run untrusted code in locked-down sandboxes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  codebox run hello.py
  codebox run Main.java --timeout 5000 --json
  codebox run solve.rb --input cases.txt
  codebox doctor
        """,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to a codebox.yaml or JSON config")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress")
    parser.add_argument("--debug", action="store_true", help="Log everything")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a source file")
    run.add_argument("file", type=str, help="Source file to execute")
    run.add_argument("--language", "-l", type=str, help="Language id (inferred from extension by default)")
    run.add_argument("--timeout", "-t", type=int, help="Wall-clock limit in milliseconds")
    run.add_argument("--input", "-i", type=str, help="File fed to the program as standard input")
    run.add_argument("--caller", type=str, help="Caller namespace id")
    run.add_argument("--json", action="store_true", help="Print the result as JSON")
    run.set_defaults(handler=cmd_run)

    languages = sub.add_parser("languages", help="List known languages")
    languages.add_argument("--runnable", action="store_true", help="Only executable languages")
    languages.add_argument("--json", action="store_true", help="Print as JSON")
    languages.set_defaults(handler=cmd_languages)

    status = sub.add_parser("status", help="Show backend availability")
    status.add_argument("--json", action="store_true", help="Print as JSON")
    status.set_defaults(handler=cmd_status)

    doctor = sub.add_parser("doctor", help="Diagnose sandbox and fallback setup")
    doctor.set_defaults(handler=cmd_doctor)

    pull = sub.add_parser("pull-images", help="Pull every sandbox image")
    pull.set_defaults(handler=cmd_pull_images)

    sweep = sub.add_parser("sweep", help="Remove sandboxes left behind by crashed processes")
    sweep.add_argument("--all", action="store_true", help="Also remove running sandboxes")
    sweep.set_defaults(handler=cmd_sweep)

    template = sub.add_parser("template", help="Print a starter program")
    template.add_argument("language", type=str)
    template.add_argument("kind", nargs="?", default=None)
    template.add_argument("--list", action="store_true", help="List template kinds")
    template.add_argument("--raw", action="store_true", help="Print without highlighting")
    template.set_defaults(handler=cmd_template)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose, debug=args.debug)

    try:
        return args.handler(args)
    except ExecutionError as exc:
        err_console.print(f"[red]{exc.user_message}[/red]")
        err_console.print(f"[dim]{exc.recovery_hint}[/dim]")
        return 1
    except CodeboxError as exc:
        err_console.print(f"[red]{exc}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
