from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Mapping, NoReturn, Optional, Sequence

from .config import DEFAULT_CONFIG, StagehandConfig, load_config
from .errors import ParseError, ResolutionError, VaultError
from .facts import FactCache, gather_facts
from .inventory import InventoryLoader
from .planner import TagFilter, list_tasks
from .playbook import PlaybookLoader
from .runner import ExecutionEngine, PlaybookRunner
from .types import ActionResult, HostResult, HostStatus
from .variables import parse_extra_vars
from .vault import Vault

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_UNREACHABLE = 3
EXIT_ERROR = 4
EXIT_USAGE = 5

VAULT_PASSWORD_ENV = "STAGEHAND_VAULT_PASSWORD"


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = _ArgumentParser(prog="stagehand", description="Stagehand host configuration orchestrator")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to stagehand config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    run = commands.add_parser("run", help="Apply a playbook to inventory hosts")
    run.add_argument("playbook", type=Path, help="Path to a playbook TOML file")
    run.add_argument("-i", "--inventory", type=Path, help="Inventory TOML file (default from config)")
    run.add_argument("--limit", help="Further restrict hosts with a pattern")
    run.add_argument("--tags", action="append", default=[], help="Only run steps with these tags")
    run.add_argument("--skip-tags", action="append", default=[], help="Skip steps with these tags")
    run.add_argument("--check", action="store_true", help="Report what would change without executing")
    run.add_argument("--forks", type=int, help="Hosts processed in parallel (default from config)")
    run.add_argument("--list-tasks", action="store_true", help="Print each host's plan and exit")
    run.add_argument("--syntax-check", action="store_true", help="Parse the playbook and exit")
    run.add_argument(
        "-e",
        "--extra-vars",
        action="append",
        default=[],
        metavar="KEY=VALUE|@FILE",
        help="Extra variables with the highest precedence",
    )
    run.add_argument("--vault-password-file", type=Path, help="File holding the vault passphrase")
    run.add_argument("--roles-path", type=Path, action="append", default=[], help="Extra role search path")
    run.add_argument("--fact-cache", type=Path, help="JSON file persisting gathered facts")
    run.add_argument("--fact-ttl", type=float, help="Seconds before cached facts are refreshed")
    run.add_argument("--log-level", dest="run_log_level", help=argparse.SUPPRESS)

    args = parser.parse_args(argv)
    if getattr(args, "run_log_level", None):
        args.log_level = args.run_log_level
    if args.command == "run" and args.forks is not None and args.forks < 1:
        parser.error("--forks must be at least 1")
    return args


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        cfg = load_config(args.config)
    except ParseError as exc:
        return _report_errors("Config validation failed", [exc])
    _apply_aws_env(cfg)
    return run_command(args, cfg)


def run_command(args: argparse.Namespace, cfg: StagehandConfig) -> int:
    try:
        vault = _load_vault(args, cfg)
        roles_path = [*args.roles_path, *cfg.roles_path]
        playbook = PlaybookLoader(roles_path, vault=vault).load(args.playbook)
        extra_vars = parse_extra_vars(args.extra_vars, vault)
    except (ParseError, VaultError) as exc:
        return _report_errors("Playbook validation failed", [exc])

    if args.syntax_check:
        print(colorize(f"playbook: {args.playbook} ({len(playbook.plays)} plays) syntax ok", Ansi.GREEN))
        return EXIT_OK

    try:
        inventory = InventoryLoader(vault=vault).load(args.inventory or cfg.inventory)
    except (ParseError, ResolutionError, VaultError) as exc:
        return _report_errors("Inventory validation failed", [exc])

    fact_cache = FactCache(gather_facts, path=args.fact_cache or cfg.fact_cache)
    engine = ExecutionEngine(
        fact_cache=fact_cache,
        dry_run=args.check,
        retries=cfg.retries,
        retry_delay=cfg.retry_delay,
        fact_ttl=args.fact_ttl if args.fact_ttl is not None else cfg.fact_ttl,
        progress_callback=print_result,
    )
    runner = PlaybookRunner(
        inventory,
        engine,
        tag_filter=TagFilter.from_options(args.tags, args.skip_tags),
        extra_vars=extra_vars,
        limit=args.limit,
        forks=args.forks or cfg.forks,
    )
    try:
        prepared = runner.prepare(playbook)
    except ResolutionError as exc:
        return _report_errors("Plan resolution failed", [exc])

    if args.list_tasks:
        for play_name, plans in prepared:
            print(f"play: {play_name}")
            for plan in plans.values():
                for line in list_tasks(plan):
                    print(f"  {line}")
        return EXIT_OK

    results = runner.execute(prepared)
    summary = Summary()
    for host_result in results.values():
        summary.add(host_result)
    print(summary.render())
    return exit_code(results)


def exit_code(results: Mapping[str, HostResult]) -> int:
    statuses = {result.status for result in results.values()}
    if statuses & {HostStatus.FAILED, HostStatus.CANCELLED}:
        return EXIT_FAILED
    if HostStatus.UNREACHABLE in statuses:
        return EXIT_UNREACHABLE
    return EXIT_OK


def format_result(result: ActionResult) -> str:
    status = result.status.value
    color: Optional[str] = None
    if result.failed:
        if "unknown operation" in result.details.lower():
            status = "unknown"
            color = Ansi.ORANGE
        elif result.ignored:
            status = "failed (ignored)"
            color = Ansi.YELLOW
        else:
            color = Ansi.RED
    elif result.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    resource = f"[{result.resource}]" if result.resource else ""
    prefix = "handler:" if result.handler else ""
    line = f"{result.host}::{prefix}{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def print_result(result: ActionResult) -> None:
    if should_display_result(result, logging.getLogger().getEffectiveLevel()):
        print(format_result(result), flush=True)


def _report_errors(title: str, errors: Sequence[Exception]) -> int:
    lines = [f"{title}:"]
    lines.extend(f"  - {error}" for error in errors)
    print(colorize("\n".join(lines), Ansi.RED), file=sys.stderr)
    return EXIT_ERROR


def _load_vault(args: argparse.Namespace, cfg: StagehandConfig) -> Optional[Vault]:
    password_file = args.vault_password_file or cfg.vault_password_file
    if password_file:
        return Vault.from_file(password_file)
    passphrase = os.environ.get(VAULT_PASSWORD_ENV)
    if passphrase:
        return Vault(passphrase)
    return None


def _apply_aws_env(cfg) -> None:
    if getattr(cfg, "aws_profile", None) and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile  # type: ignore[assignment]
    if getattr(cfg, "aws_region", None):
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region  # type: ignore[assignment]
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region  # type: ignore[assignment]


class Summary:
    """Per-host recap plus fleet totals."""

    def __init__(self) -> None:
        self.hosts: dict[str, HostResult] = {}

    def add(self, result: HostResult) -> None:
        self.hosts[result.host] = result

    @property
    def failures(self) -> int:
        return sum(1 for result in self.hosts.values() if result.status is HostStatus.FAILED)

    @property
    def unreachable(self) -> int:
        return sum(1 for result in self.hosts.values() if result.status is HostStatus.UNREACHABLE)

    def render(self) -> str:
        lines: list[str] = []
        totals = {"ok": 0, "changed": 0, "failed": 0, "skipped": 0}
        for name, result in self.hosts.items():
            counts = {
                "ok": result.ok,
                "changed": result.changed,
                "failed": result.failed,
                "skipped": result.skipped,
            }
            for key, value in counts.items():
                totals[key] += value
            parts = " ".join(f"{key}={value}" for key, value in counts.items())
            line = f"{name}: {parts} status={result.status.value}"
            if result.error and result.status is not HostStatus.SUCCEEDED:
                line += f" ({result.error})"
            lines.append(colorize(line, _status_color(result.status)))
        text = " | ".join(
            [
                f"Hosts: {len(self.hosts)}",
                f"Ok: {totals['ok']}",
                f"Changed: {totals['changed']}",
                f"Failed: {totals['failed']}",
                f"Skipped: {totals['skipped']}",
                f"Unreachable: {self.unreachable}",
                f"Failed hosts: {self.failures}",
            ]
        )
        color = Ansi.GREEN if self.failures == 0 and self.unreachable == 0 else Ansi.RED
        lines.append(colorize(text, color))
        return "\n".join(lines)


def _status_color(status: HostStatus) -> str:
    if status is HostStatus.SUCCEEDED:
        return Ansi.GREEN
    if status is HostStatus.UNREACHABLE:
        return Ansi.ORANGE
    if status is HostStatus.CANCELLED:
        return Ansi.YELLOW
    return Ansi.RED


if __name__ == "__main__":
    raise SystemExit(main())
