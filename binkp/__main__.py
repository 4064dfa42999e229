"""
binkp — FidoNet mailer CLI entry point.

Usage:
    python -m binkp poll [ADDRESS] [--all] [--queued-only] [--hostname H] [--port N] [--password P]
    python -m binkp test ADDRESS [--timeout N]
    python -m binkp status
    python -m binkp server [--quiet]
    python -m binkp inbound  process [FILE] | list | retry FILE | cleanup [--hours N]
    python -m binkp outbound list | cleanup [--hours N]
    python -m binkp crashmail process [--limit N] | status | queue NETMAIL_ID | retry ID | cancel ID
    python -m binkp scheduler run [--interval N] [--quiet] | status

Collaborators (PacketStore, NodelistManager, NetmailStore) are named in the
"collaborators" section of the config as "module:attribute"; the attribute
is called with the BinkpConfig and must return the object.
"""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
import time
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .client import Client
from .config import BinkpConfig
from .crashmail import CrashDelivery
from .errors import BinkpError, ConfigError
from .inbound import InboundQueue
from .outbound import OutboundQueue
from .progress import AnyProgress, NullProgress, ProgressTracker
from .scheduler import Scheduler
from .server import Server
from .session import SessionResult
from .session_log import SqliteSessionLog

DEFAULT_CONFIG = "config/binkp.json"

console = Console()
err_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=handlers,
    )


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_poll(args: argparse.Namespace) -> int:
    """Call one uplink, or every enabled uplink with --all."""
    config = _load_config(args)
    slog = SqliteSessionLog(config.database_path)
    progress = _progress(args)
    client = Client(config, session_log=slog, progress=progress)
    progress.start()
    try:
        if args.all or not args.address:
            results = client.poll_all_uplinks(queued_only=args.queued_only)
        elif args.hostname:
            results = {args.address: client.connect(args.address, args.hostname,
                                                    args.port, args.password)}
        else:
            results = {args.address: client.poll_uplink(args.address)}
    finally:
        progress.stop()
        slog.close()

    if not results:
        console.print("Nothing to poll.")
        return 0
    _print_results(results)
    console.print(progress.summary())
    return 0 if all(r.success for r in results.values()) else 1


def cmd_test(args: argparse.Namespace) -> int:
    """TCP reachability check for one uplink."""
    config = _load_config(args)
    uplink = config.get_uplink_by_address(args.address)
    if uplink is None:
        err_console.print(f"[red]Uplink not found: {args.address}[/]")
        return 1
    probe = Client(config).test_connection(uplink.hostname, uplink.port, args.timeout)
    if probe.success:
        console.print(f"[green]✓[/] {uplink.hostname}:{uplink.port} "
                      f"reachable in {probe.connect_time * 1000:.0f} ms")
        return 0
    console.print(f"[red]✗[/] {uplink.hostname}:{uplink.port} unreachable: {escape(probe.error)}")
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Uplink reachability plus queue counters."""
    config = _load_config(args)
    client = Client(config)

    table = Table(title="Uplinks")
    for col in ("ADDRESS", "HOST", "ENABLED", "STATUS", "TIME"):
        table.add_column(col)
    all_ok = True
    for address, (uplink, probe) in client.uplink_status().items():
        all_ok = all_ok and (probe.success or not uplink.enabled)
        table.add_row(
            address,
            f"{uplink.hostname}:{uplink.port}",
            "yes" if uplink.enabled else "no",
            "[green]online[/]" if probe.success else f"[red]{escape(probe.error)}[/]",
            f"{probe.connect_time * 1000:.0f} ms" if probe.success else "-",
        )
    console.print(table)

    queues = Table(title="Queues")
    queues.add_column("QUEUE")
    queues.add_column("PENDING", justify="right")
    queues.add_column("OTHER")
    inbound = client.inbound.stats()
    outbound = client.outbound.stats()
    queues.add_row("inbound", str(inbound["pending_files"]),
                   f"{inbound['partial_files']} partial, {inbound['error_files']} in error/")
    queues.add_row("outbound", str(outbound["pending_files"]),
                   f"{_fmt_size(outbound['total_size'])}, {outbound['claimed_files']} claimed")
    console.print(queues)
    return 0 if all_ok else 1


def cmd_server(args: argparse.Namespace) -> int:
    """Answer incoming binkp calls until Ctrl-C."""
    config = _load_config(args)
    config.ensure_directories()
    slog = SqliteSessionLog(config.database_path)
    store = _collaborator(config, "packet_store", required=False)
    inbound = InboundQueue(config, store)

    def on_session(result: SessionResult) -> None:
        if result.success and result.files_received and store is not None:
            inbound.process()

    progress = _progress(args)
    server = Server(config, session_log=slog, on_session=on_session, progress=progress)
    server.start()
    progress.start()
    host, port = server.address
    console.print(f"binkp listening on {host}:{port}  →  {config.inbound_path}")
    console.print("Press Ctrl-C to stop.\n")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
        progress.stop()
        slog.close()
    return 0


def cmd_inbound(args: argparse.Namespace) -> int:
    config = _load_config(args)

    if args.action == "list":
        queue = InboundQueue(config)
        _print_files("Inbound", queue.pending_files())
        _print_files("Inbound errors", queue.error_files())
        return 0
    if args.action == "cleanup":
        removed = InboundQueue(config).cleanup(args.hours)
        console.print(f"Removed {len(removed)} old error or partial file(s).")
        return 0

    queue = InboundQueue(config, _collaborator(config, "packet_store"))
    try:
        if args.action == "retry":
            results = [queue.retry(args.file)]
        elif args.file:
            results = [queue.process_file(args.file)]
        else:
            results = queue.process()
    except FileNotFoundError as exc:
        err_console.print(f"[red]{escape(str(exc))}[/]")
        return 1

    if not results:
        console.print("No inbound packets.")
        return 0
    table = Table(title="Inbound processing")
    for col in ("FILE", "RESULT", "MESSAGES"):
        table.add_column(col)
    for r in results:
        table.add_row(r.filename, "[green]ok[/]" if r.success else f"[red]{escape(r.error)}[/]",
                      str(r.messages))
    console.print(table)
    return 0 if all(r.success for r in results) else 1


def cmd_outbound(args: argparse.Namespace) -> int:
    config = _load_config(args)
    queue = OutboundQueue(config)
    if args.action == "cleanup":
        removed = queue.cleanup(args.hours)
        console.print(f"Removed {len(removed)} old outbound file(s).")
        return 0

    table = Table(title="Outbound")
    for col in ("FILE", "SIZE", "MODIFIED", "FROM", "TO", "VIA"):
        table.add_column(col)
    for path in queue.list_packets():
        info = queue.packet_info(path)
        via = config.get_uplink_for_destination(info["dest_address"]) if info["dest_address"] else None
        table.add_row(
            info["filename"],
            _fmt_size(info["size"]),
            _fmt_time(info["modified"]),
            info["orig_address"] or "?",
            info["dest_address"] or "[red]unreadable[/]",
            via.address if via else "-",
        )
    console.print(table)
    return 0


def cmd_crashmail(args: argparse.Namespace) -> int:
    config = _load_config(args)
    slog = SqliteSessionLog(config.database_path)
    crash = CrashDelivery(
        config,
        _collaborator(config, "netmail_store"),
        _collaborator(config, "packet_store"),
        _collaborator(config, "nodelist", required=False),
        session_log=slog,
    )
    try:
        if args.action == "process":
            counts = crash.process_queue(args.limit)
            console.print("Processed {processed}: {success} sent, {failed} failed, "
                          "{deferred} deferred".format(**counts))
            return 0 if counts["failed"] == 0 and counts["deferred"] == 0 else 1
        if args.action == "queue":
            return 0 if crash.queue(args.id) else 1
        if args.action == "retry":
            ok = crash.retry(args.id)
            console.print("Reset for retry." if ok else f"No failed item {args.id}.")
            return 0 if ok else 1
        if args.action == "cancel":
            ok = crash.cancel(args.id)
            console.print("Cancelled." if ok else f"No unsent item {args.id}.")
            return 0 if ok else 1

        stats = crash.queue_stats()
        console.print("pending {pending}  attempting {attempting}  sent (24h) {sent_24h}  "
                      "failed {failed}  total {total}".format(**stats))
        table = Table(title="Crashmail queue")
        for col in ("ID", "NETMAIL", "TO", "HOST", "STATUS", "ATTEMPTS", "NEXT", "ERROR"):
            table.add_column(col)
        for item in crash.queue_items(args.status, args.limit):
            table.add_row(
                str(item.id), str(item.netmail_id), item.destination_address,
                f"{item.destination_host}:{item.destination_port}" if item.destination_host else "-",
                item.status.value, f"{item.attempts}/{item.max_attempts}",
                _fmt_time(item.next_attempt_at), escape(item.error_message or ""),
            )
        console.print(table)
        return 0
    finally:
        slog.close()


def cmd_scheduler(args: argparse.Namespace) -> int:
    """Poll uplinks on their schedules, or show when each is due."""
    config = _load_config(args)
    config.ensure_directories()
    slog = SqliteSessionLog(config.database_path)
    try:
        if args.action == "status":
            scheduler = Scheduler(config, Client(config), session_log=slog)
            table = Table(title="Poll schedule")
            for col in ("UPLINK", "SCHEDULE", "ENABLED", "LAST POLL", "NEXT POLL", "DUE"):
                table.add_column(col)
            for s in scheduler.status():
                table.add_row(
                    s.address, s.schedule, "yes" if s.enabled else "no",
                    _fmt_time(s.last_poll) if s.last_poll else "never",
                    _fmt_time(s.next_poll) if s.next_poll else "-",
                    "[yellow]yes[/]" if s.due else "no",
                )
            console.print(table)
            return 0

        store = _collaborator(config, "packet_store", required=False)
        netmail = _collaborator(config, "netmail_store", required=False)
        crash = None
        if store is not None and netmail is not None:
            crash = CrashDelivery(config, netmail, store,
                                  _collaborator(config, "nodelist", required=False),
                                  session_log=slog)
        progress = _progress(args)
        client = Client(config, session_log=slog, progress=progress)
        scheduler = Scheduler(
            config, client,
            inbound=InboundQueue(config, store) if store is not None else None,
            crash=crash,
            session_log=slog,
        )
        console.print(f"Scheduler running every {args.interval:g}s for "
                      f"{len(config.get_enabled_uplinks())} uplink(s). Press Ctrl-C to stop.")
        progress.start()
        try:
            scheduler.run(args.interval)
        except KeyboardInterrupt:
            scheduler.stop()
        finally:
            progress.stop()
        return 0
    finally:
        slog.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_config(args: argparse.Namespace) -> BinkpConfig:
    return BinkpConfig.load(args.config)


def _collaborator(config: BinkpConfig, name: str, required: bool = True) -> Any:
    """Instantiate the "module:attribute" factory configured under *name*."""
    spec = config.collaborators.get(name)
    if not spec:
        if required:
            raise ConfigError(f"collaborators.{name} is not configured")
        return None
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise ConfigError(f"collaborators.{name}: expected 'module:attribute', got {spec!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"collaborators.{name}: cannot load {spec}: {exc}") from exc
    return factory(config)


def _progress(args: argparse.Namespace) -> AnyProgress:
    if getattr(args, "quiet", False) or not sys.stderr.isatty():
        return NullProgress()
    return ProgressTracker()


def _print_results(results: dict[str, SessionResult]) -> None:
    table = Table(title="Poll results")
    for col in ("UPLINK", "RESULT", "AUTH", "SENT", "RECEIVED", "TIME"):
        table.add_column(col)
    for address, r in results.items():
        if r.success:
            status = "[green]ok[/]"
        else:
            kind = r.error_kind.value if r.error_kind else "error"
            status = f"[red]{kind}: {escape(r.error)}[/]"
        table.add_row(
            address, status, r.auth_method or "-",
            str(len(r.files_sent)), str(len(r.files_received)), f"{r.duration:.1f}s",
        )
    console.print(table)


def _print_files(title: str, files: list[dict[str, Any]]) -> None:
    table = Table(title=f"{title} ({len(files)})")
    for col in ("FILE", "SIZE", "MODIFIED"):
        table.add_column(col)
    for f in files:
        table.add_row(f["filename"], _fmt_size(f["size"]), _fmt_time(f["modified"]))
    console.print(table)


def _fmt_size(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if n < 1024:
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} PB"


def _fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binkp",
        description="binkp — FidoNet mailer (FTS-1026)")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG,
                        help=f"Configuration file (default: {DEFAULT_CONFIG})")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--log-file", help="Also write the log to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- poll ---
    p_poll = sub.add_parser("poll", help="Call uplinks and exchange mail")
    p_poll.add_argument("address", nargs="?", help="Uplink FTN address")
    p_poll.add_argument("--all", action="store_true", help="Poll every enabled uplink")
    p_poll.add_argument("--queued-only", action="store_true",
                        help="With --all, skip uplinks with nothing queued")
    p_poll.add_argument("--hostname", help="Override the uplink hostname")
    p_poll.add_argument("--port", type=int, help="Override the uplink port")
    p_poll.add_argument("--password", help="Override the session password")
    p_poll.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- test ---
    p_test = sub.add_parser("test", help="Check that an uplink accepts TCP connections")
    p_test.add_argument("address", help="Uplink FTN address")
    p_test.add_argument("--timeout", type=float, default=30,
                        help="Connect timeout in seconds (default 30)")

    # --- status ---
    sub.add_parser("status", help="Uplink reachability and queue counters")

    # --- server ---
    p_server = sub.add_parser("server", help="Answer incoming binkp sessions")
    p_server.add_argument("--quiet", action="store_true", help="No progress bars")

    # --- inbound ---
    p_in = sub.add_parser("inbound", help="Inbound packet queue")
    in_sub = p_in.add_subparsers(dest="action", required=True)
    p_in_proc = in_sub.add_parser("process", help="Import queued packets")
    p_in_proc.add_argument("file", nargs="?", help="Process only this file")
    in_sub.add_parser("list", help="List queued and failed packets")
    p_in_retry = in_sub.add_parser("retry", help="Reprocess a file from error/")
    p_in_retry.add_argument("file")
    p_in_clean = in_sub.add_parser("cleanup", help="Delete old error files and abandoned partials")
    p_in_clean.add_argument("--hours", type=float, default=24)

    # --- outbound ---
    p_out = sub.add_parser("outbound", help="Outbound packet queue")
    out_sub = p_out.add_subparsers(dest="action", required=True)
    out_sub.add_parser("list", help="List queued packets and their routes")
    p_out_clean = out_sub.add_parser("cleanup", help="Delete old queued packets")
    p_out_clean.add_argument("--hours", type=float, default=48)

    # --- crashmail ---
    p_crash = sub.add_parser("crashmail", help="Direct netmail delivery queue")
    crash_sub = p_crash.add_subparsers(dest="action", required=True)
    p_crash_proc = crash_sub.add_parser("process", help="Attempt due deliveries")
    p_crash_proc.add_argument("--limit", type=int, default=10)
    p_crash_status = crash_sub.add_parser("status", help="Queue counters and items")
    p_crash_status.add_argument("--status", choices=("pending", "attempting", "sent", "failed"))
    p_crash_status.add_argument("--limit", type=int, default=50)
    for name, help_text in (("queue", "Queue a netmail for crash delivery"),
                            ("retry", "Reset a failed item"),
                            ("cancel", "Remove an unsent item")):
        p = crash_sub.add_parser(name, help=help_text)
        p.add_argument("id", type=int, help="Netmail id" if name == "queue" else "Queue item id")

    # --- scheduler ---
    p_sched = sub.add_parser("scheduler", help="Poll uplinks on their cron schedules")
    sched_sub = p_sched.add_subparsers(dest="action", required=True)
    p_sched_run = sched_sub.add_parser("run", help="Run until Ctrl-C")
    p_sched_run.add_argument("--interval", type=float, default=60,
                             help="Seconds between passes (default 60)")
    p_sched_run.add_argument("--quiet", action="store_true", help="No progress bars")
    sched_sub.add_parser("status", help="Last and next poll per uplink")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    _setup_logging(args.verbose, args.log_file)

    handlers = {
        "poll":      cmd_poll,
        "test":      cmd_test,
        "status":    cmd_status,
        "server":    cmd_server,
        "inbound":   cmd_inbound,
        "outbound":  cmd_outbound,
        "crashmail": cmd_crashmail,
        "scheduler": cmd_scheduler,
    }
    try:
        code = handlers[args.command](args)
    except BinkpError as exc:
        err_console.print(f"[red]Error ({exc.kind.value}): {escape(str(exc))}[/]")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
