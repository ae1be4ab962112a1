"""Kuro command line — manage scheduled HTTP tasks and run the scheduler.

Usage examples:
    # Run the scheduler in the foreground (Ctrl+C to stop)
    kuro run

    # Add a task from a curl command
    kuro add "Health check" --cron "*/5 * * * *" --curl "curl https://example.com/health"

    # Add a task field by field
    kuro add "Nightly sync" --cron "0 2 * * *" --url https://api.example.com/sync \
        --method POST --body '{"full": true}' --auth-type bearer --auth-value TOKEN

    # Inspect and control tasks
    kuro list
    kuro pause 3
    kuro edit 3 --cron "0 */2 * * *"
    kuro logs --task 3 --limit 20
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime

from kuro.config import settings
from kuro.cron import describe_cron_expression, format_next_run, validate_cron_expression
from kuro.curl import format_auth_for_display, parse_curl_command, validate_url
from kuro.scheduler.executor import HttpExecutor
from kuro.scheduler.models import (
    AUTH_TYPES,
    HTTP_METHODS,
    STATUS_ACTIVE,
    STATUS_PAUSED,
    LogRecord,
    Task,
    TaskNotFound,
)
from kuro.scheduler.store import TaskStore


class UsageError(Exception):
    """Invalid command-line input."""


def _format_time(timestamp: int | None) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def _format_log(record: LogRecord) -> str:
    code = record.response_code if record.response_code is not None else "---"
    name = f" [{record.task_name}]" if record.task_name else f" [task {record.task_id}]"
    line = (
        f"{_format_time(record.executed_at)} {record.status:7s} {code} "
        f"{record.duration_ms}ms{name}"
    )
    if record.error_message:
        line += f" {record.error_message}"
    return line


async def _require_task(store: TaskStore, task_id: int) -> Task:
    task = await store.find_by_id(task_id)
    if task is None:
        raise TaskNotFound(f"Task {task_id} not found")
    return task


def _parse_headers(values: list[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, content = value.partition(":")
        if not sep or not name.strip():
            raise UsageError(f"Invalid header (expected 'Name: value'): {value!r}")
        headers[name.strip()] = content.strip()
    return headers


def build_task(args: argparse.Namespace) -> Task:
    """Assemble a Task from ``kuro add`` arguments."""
    validation = validate_cron_expression(args.cron)
    if not validation.valid:
        raise UsageError(validation.error)

    if args.curl:
        parsed = parse_curl_command(args.curl)
        if parsed is None:
            raise UsageError("Could not parse the curl command")
        method, url, headers, body = parsed.method, parsed.url, parsed.headers, parsed.body
        auth_type, auth_value = parsed.auth_type, parsed.auth_value
    else:
        if not args.url:
            raise UsageError("Either --url or --curl is required")
        method, url, body = args.method, args.url, args.body
        headers = _parse_headers(args.header)
        auth_type, auth_value = args.auth_type, args.auth_value

    if not validate_url(url):
        raise UsageError(f"Invalid URL (must be http or https): {url}")
    if auth_type and not auth_value:
        raise UsageError("--auth-value is required with --auth-type")

    return Task(
        name=args.name,
        cron_expression=args.cron,
        url=url,
        http_method=method,
        headers=headers,
        body=body,
        auth_type=auth_type,
        auth_value=auth_value,
        timeout_ms=args.timeout if args.timeout is not None else settings.default_timeout_ms,
        retry_count=args.retries if args.retries is not None else settings.default_retry_count,
        status=STATUS_PAUSED if args.paused else STATUS_ACTIVE,
    )


# -- Commands ------------------------------------------------------------------


async def cmd_run(store: TaskStore, args: argparse.Namespace) -> int:
    from kuro.daemon import serve

    await serve(store=store)
    return 0


async def cmd_add(store: TaskStore, args: argparse.Namespace) -> int:
    task = await store.create(build_task(args))
    print(f"Created task {task.id}: {task.name} ({task.http_method} {task.url})")
    print(f"Schedule: {task.cron_expression} - {describe_cron_expression(task.cron_expression)}")
    if task.is_active:
        print("The running scheduler picks the task up within its next reconciliation tick.")
    return 0


async def cmd_list(store: TaskStore, args: argparse.Namespace) -> int:
    tasks = await store.find_all()
    if not tasks:
        print("No tasks.")
        return 0
    for task in tasks:
        next_run = format_next_run(task.next_run) if task.next_run and task.is_active else "-"
        print(
            f"{task.id:>4}  {task.status:6s}  {task.cron_expression:15s}  "
            f"{task.http_method:6s} {task.name}  next: {next_run}  "
            f"ok/fail: {task.success_count}/{task.failure_count}"
        )
    return 0


async def cmd_show(store: TaskStore, args: argparse.Namespace) -> int:
    task = await _require_task(store, args.task_id)
    stats = await store.get_stats(task.id)
    print(f"Task {task.id}: {task.name}")
    print(f"  Status:    {task.status}")
    print(f"  Schedule:  {task.cron_expression} ({describe_cron_expression(task.cron_expression)})")
    print(f"  Request:   {task.http_method} {task.url}")
    print(f"  Headers:   {', '.join(task.headers) or 'None'}")
    print(f"  Auth:      {format_auth_for_display(task.auth_type, task.auth_value)}")
    print(f"  Timeout:   {task.timeout_ms}ms, retries: {task.retry_count}")
    print(f"  Next run:  {_format_time(task.next_run)}")
    print(f"  Last run:  {_format_time(task.last_run)}")
    if stats is not None:
        print(
            f"  Runs:      {stats.total} ({stats.success} ok, {stats.failure} failed, "
            f"{stats.success_rate}% success)"
        )
    return 0


async def cmd_pause(store: TaskStore, args: argparse.Namespace) -> int:
    await _require_task(store, args.task_id)
    await store.set_status(args.task_id, STATUS_PAUSED)
    await store.set_next_fire_time(args.task_id, None)
    print(f"Task {args.task_id} paused")
    return 0


async def cmd_resume(store: TaskStore, args: argparse.Namespace) -> int:
    await _require_task(store, args.task_id)
    await store.set_status(args.task_id, STATUS_ACTIVE)
    print(f"Task {args.task_id} resumed")
    return 0


async def cmd_edit(store: TaskStore, args: argparse.Namespace) -> int:
    task = await _require_task(store, args.task_id)
    fields: dict = {}

    if args.name:
        fields["name"] = args.name
    if args.cron:
        validation = validate_cron_expression(args.cron)
        if not validation.valid:
            raise UsageError(validation.error)
        fields["cron_expression"] = args.cron
        if task.is_active:
            fields["next_run"] = validation.next_run
    if args.curl:
        parsed = parse_curl_command(args.curl)
        if parsed is None:
            raise UsageError("Could not parse the curl command")
        if not validate_url(parsed.url):
            raise UsageError(f"Invalid URL (must be http or https): {parsed.url}")
        fields.update(
            http_method=parsed.method,
            url=parsed.url,
            headers=parsed.headers,
            body=parsed.body,
            auth_type=parsed.auth_type,
            auth_value=parsed.auth_value,
        )
    elif args.url:
        if not validate_url(args.url):
            raise UsageError(f"Invalid URL (must be http or https): {args.url}")
        fields["url"] = args.url

    if not fields:
        raise UsageError("Nothing to change (use --name, --cron, --curl or --url)")
    await store.update(task.id, **fields)
    print(f"Task {task.id} updated: {', '.join(sorted(fields))}")
    if "cron_expression" in fields and task.is_active:
        print("A running scheduler re-arms the task within its next reconciliation tick.")
    return 0


async def cmd_delete(store: TaskStore, args: argparse.Namespace) -> int:
    if not await store.delete(args.task_id):
        raise TaskNotFound(f"Task {args.task_id} not found")
    print(f"Task {args.task_id} deleted")
    return 0


async def cmd_run_now(store: TaskStore, args: argparse.Namespace) -> int:
    task = await _require_task(store, args.task_id)
    outcome = await HttpExecutor(store=store).execute(task)
    code = outcome.response_code if outcome.response_code is not None else "---"
    print(f"{outcome.status} {code} ({outcome.duration_ms}ms)")
    if outcome.error_message:
        print(outcome.error_message)
    if outcome.response_body and args.verbose:
        print(outcome.response_body)
    return 0 if outcome.success else 1


async def cmd_logs(store: TaskStore, args: argparse.Namespace) -> int:
    if args.task is not None:
        await _require_task(store, args.task)
        records = await store.logs_for_task(args.task, args.limit)
    elif args.errors:
        records = await store.error_logs(args.limit)
    else:
        records = await store.recent_logs(args.limit)
    if not records:
        print("No logs found.")
        return 0
    for record in records:
        print(_format_log(record))
    return 0


async def cmd_cleanup(store: TaskStore, args: argparse.Namespace) -> int:
    removed = await store.cleanup_old_logs(args.days)
    print(f"Removed {removed} log entr{'y' if removed == 1 else 'ies'}")
    return 0


_COMMANDS = {
    "run": cmd_run,
    "add": cmd_add,
    "list": cmd_list,
    "show": cmd_show,
    "pause": cmd_pause,
    "resume": cmd_resume,
    "edit": cmd_edit,
    "delete": cmd_delete,
    "run-now": cmd_run_now,
    "logs": cmd_logs,
    "cleanup": cmd_cleanup,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kuro", description="Run HTTP requests on cron schedules")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduler in the foreground")

    add = sub.add_parser("add", help="Create a task")
    add.add_argument("name", help="Task name")
    add.add_argument("--cron", required=True, help="5-field cron expression")
    add.add_argument("--curl", help="curl command describing the request")
    add.add_argument("--url", help="Request URL")
    add.add_argument("--method", default="GET", type=str.upper, choices=HTTP_METHODS)
    add.add_argument(
        "--header", "-H", action="append", default=[], help="Header 'Name: value' (repeatable)"
    )
    add.add_argument("--body", help="Request body (sent for POST/PUT/PATCH)")
    add.add_argument("--auth-type", choices=AUTH_TYPES)
    add.add_argument("--auth-value")
    add.add_argument("--timeout", type=int, help="Timeout in milliseconds")
    add.add_argument("--retries", type=int, help="Retries after timeouts or network errors")
    add.add_argument("--paused", action="store_true", help="Create the task paused")

    sub.add_parser("list", help="List tasks")
    for name, text in (
        ("show", "Show a task"),
        ("pause", "Pause a task"),
        ("resume", "Resume a task"),
        ("delete", "Delete a task and its logs"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("task_id", type=int)

    edit = sub.add_parser("edit", help="Change a task's name, schedule or request")
    edit.add_argument("task_id", type=int)
    edit.add_argument("--name", help="New task name")
    edit.add_argument("--cron", help="New 5-field cron expression")
    request = edit.add_mutually_exclusive_group()
    request.add_argument("--curl", help="Replace the whole request with this curl command")
    request.add_argument("--url", help="Change only the request URL")

    run_now = sub.add_parser("run-now", help="Execute a task immediately")
    run_now.add_argument("task_id", type=int)
    run_now.add_argument("--verbose", "-v", action="store_true", help="Print the response body")

    logs = sub.add_parser("logs", help="Show execution logs")
    logs.add_argument("--task", type=int, help="Only logs of this task")
    logs.add_argument("--errors", action="store_true", help="Only failed executions")
    logs.add_argument("--limit", "-n", type=int, default=50)

    cleanup = sub.add_parser("cleanup", help="Delete logs past the retention window")
    cleanup.add_argument("--days", type=int, help="Retention in days (default: setting)")

    return parser


async def dispatch(args: argparse.Namespace, store: TaskStore | None = None) -> int:
    store = store or TaskStore.get()
    try:
        return await _COMMANDS[args.command](store, args)
    except (UsageError, TaskNotFound) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    return asyncio.run(dispatch(args))


if __name__ == "__main__":
    sys.exit(main())
