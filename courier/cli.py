"""
Command-line interface for the delivery scheduler.

Provides commands for:
- Starting/stopping the scheduler daemon and checking its status
- Scheduling, rescheduling and cancelling message delivery
- Listing pending deliveries and a message's delivery history
- Managing configuration
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from courier.config import SchedulerConfig
from courier.errors import CourierError
from courier.recurrence import UTC, resolve_timezone
from courier.service import (
    create_scheduler,
    get_data_dir,
    get_scheduler_info,
    is_scheduler_running,
    remove_pid_file,
    write_pid_file,
)

logger = logging.getLogger(__name__)

# Handlers added by setup_logging, replaced on the next call
_installed_handlers: List[logging.Handler] = []


def setup_logging(log_file: Optional[str] = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers[:] = [console_handler]
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        _installed_handlers.append(file_handler)
        root_logger.addHandler(file_handler)

    # APScheduler logs every interval run at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)


def parse_instant(value: str, tz_name: str = "UTC") -> datetime:
    """
    Parse an ISO 8601 timestamp; naive values are read in ``tz_name``.

    Raises:
        argparse.ArgumentTypeError: If the value is not ISO 8601
    """
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=resolve_timezone(tz_name))
    return parsed.astimezone(UTC)


def _load_config(args) -> SchedulerConfig:
    config = SchedulerConfig(args.config)
    if getattr(args, 'mode', None):
        config.mode = args.mode
    if getattr(args, 'workers', None):
        config.queue.workers = args.workers
    return config


def _build_scheduler(args):
    config = _load_config(args)
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"  - {error}")
        raise CourierError("Invalid configuration")
    return create_scheduler(config)


def cmd_start(args):
    """Start the scheduler and block until SIGINT/SIGTERM."""
    config = _load_config(args)
    log_file = None if args.foreground else (args.log_file or config.logging.file)
    setup_logging(log_file=log_file, verbose=args.verbose, level=config.logging.level)

    errors = config.validate()
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    running, pid = is_scheduler_running()
    if running:
        logger.warning(f"Scheduler is already running (PID: {pid})")
        sys.exit(1)

    try:
        scheduler = create_scheduler(config)
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)

    stop_requested = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scheduler.start()
    write_pid_file({
        'mode': scheduler.mode,
        'config_path': str(config.config_path),
        'database_url': config.database_url,
        'log_file': log_file,
        'working_directory': os.getcwd(),
    })
    logger.info(f"Scheduler running in {scheduler.mode} mode. Use 'courier stop' to stop it.")

    try:
        while not stop_requested.wait(1):
            pass
    finally:
        scheduler.stop(wait=True)
        remove_pid_file()


def cmd_stop(args):
    """Stop the running scheduler."""
    setup_logging(verbose=args.verbose)

    running, pid = is_scheduler_running()
    if not running:
        logger.warning("Scheduler does not appear to be running (no PID file)")
        return

    logger.info(f"Stopping scheduler (PID: {pid})...")
    os.kill(pid, signal.SIGTERM)

    for _ in range(10):
        time.sleep(1)
        if not is_scheduler_running()[0]:
            logger.info("Scheduler stopped successfully")
            return

    logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
    os.kill(pid, signal.SIGKILL)
    remove_pid_file()


def cmd_status(args):
    """Show scheduler status."""
    setup_logging(verbose=args.verbose)

    info = get_scheduler_info()
    print("\n┌─────────────────────────────────────────────────────────────────┐")
    print("│                      SCHEDULER STATUS                           │")
    print("└─────────────────────────────────────────────────────────────────┘\n")

    if not info:
        print("  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the scheduler with: courier start --foreground\n")
        return

    print("  Status:     \033[92m● Running\033[0m")
    print(f"  PID:        {info['pid']}")
    for label, key in (
        ("Started", 'started_at'),
        ("Mode", 'mode'),
        ("Config", 'config_path'),
        ("Database", 'database_url'),
        ("Log File", 'log_file'),
    ):
        if info.get(key):
            print(f"  {label + ':':<11} {info[key]}")
    print(f"  Data Dir:   {info.get('data_dir', get_data_dir())}\n")


def cmd_schedule(args):
    """Schedule (or reschedule) delivery of a message."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler = _build_scheduler(args)
        deliver_at = parse_instant(args.at, args.tz)
        if args.command == 'reschedule':
            handle = scheduler.reschedule(args.message_id, deliver_at)
        else:
            handle = scheduler.schedule(args.message_id, deliver_at)
    except (CourierError, argparse.ArgumentTypeError) as e:
        logger.error(f"Failed to {args.command} message: {e}")
        sys.exit(1)

    print(f"Message {handle.message_id} scheduled for {handle.scheduled_for.isoformat()}")
    print(f"  Mode: {handle.mode}  Schedule ID: {handle.schedule_id}  Status: {handle.status}")


def cmd_cancel(args):
    """Cancel delivery of a message."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler = _build_scheduler(args)
        had_pending = scheduler.cancel(args.message_id)
    except CourierError as e:
        logger.error(f"Failed to cancel message: {e}")
        sys.exit(1)

    if had_pending:
        print(f"Cancelled pending delivery of {args.message_id}")
    else:
        print(f"No pending delivery for {args.message_id}")


def cmd_list(args):
    """List pending deliveries."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler = _build_scheduler(args)
        start = parse_instant(args.start, args.tz) if args.start else None
        end = parse_instant(args.end, args.tz) if args.end else None
        pending = sorted(scheduler.list_scheduled(start, end), key=lambda s: s.scheduled_for)
    except (CourierError, argparse.ArgumentTypeError) as e:
        logger.error(f"Failed to list deliveries: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps([s.to_dict() for s in pending], indent=2))
        return

    print(f"\n{len(pending)} pending deliver{'y' if len(pending) == 1 else 'ies'} ({scheduler.mode} mode)\n")
    for item in pending:
        retry = f"  retry {item.attempt}" if item.attempt else ""
        print(f"  {item.scheduled_for.isoformat():<32} {item.message_id}  [{item.status}]{retry}")
    if pending:
        print()


def cmd_run_once(args):
    """Deliver everything that is due right now, then exit."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler = _build_scheduler(args)
        if scheduler.mode == 'queue':
            processed = scheduler.run_pending()
        else:
            processed = scheduler.poll_once()
    except CourierError as e:
        logger.error(f"Run failed: {e}")
        sys.exit(1)

    print(f"Processed {processed} due deliver{'y' if processed == 1 else 'ies'}")


def cmd_history(args):
    """Show a message's status and delivery attempts."""
    setup_logging(verbose=args.verbose)

    try:
        scheduler = _build_scheduler(args)
        message = scheduler.store.find_by_id(args.message_id)
        logs = scheduler.store.find_delivery_logs(args.message_id)
    except CourierError as e:
        logger.error(f"Failed to load history: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps({
            'message': message.to_dict(),
            'attempts': [entry.to_dict() for entry in logs],
        }, indent=2))
        return

    print(f"\n  \033[1m{message.title}\033[0m ({message.id})")
    print(f"    Status:       {message.status.value}")
    print(f"    Deliver At:   {message.deliver_at.isoformat()} ({message.timezone})")
    print(f"    Recurrence:   {message.recurrence.value}")
    if message.delivered_at:
        print(f"    Delivered At: {message.delivered_at.isoformat()}")

    print(f"\n  {len(logs)} delivery attempt(s)")
    for entry in logs:
        color = "\033[92m" if entry.status == 'sent' else "\033[91m"
        line = f"    {entry.attempted_at.isoformat()}  {color}{entry.status}\033[0m"
        if entry.error:
            line += f"  {entry.error}"
        print(line)
    print()


def cmd_init(args):
    """Initialize configuration file."""
    setup_logging(verbose=args.verbose)

    config = SchedulerConfig(args.config)
    if config.config_path.exists():
        logger.warning(f"Configuration already exists: {config.config_path}")
        return

    config.save()
    print(f"Created configuration file: {config.config_path}")
    print("Edit it to set the database URL, sender and worker settings.")


def cmd_show_config(args):
    """Show configuration."""
    setup_logging(verbose=args.verbose)

    config = SchedulerConfig(args.config)
    print(f"Configuration file: {config.config_path}\n")
    print(json.dumps(config.to_dict(), indent=2))

    errors = config.validate()
    if errors:
        print("\nValidation errors:")
        for error in errors:
            print(f"  ✗ {error}")
    else:
        print("\n✓ Configuration is valid")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='courier',
        description="Courier - deliver scheduled messages with retries and recurrence",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to scheduler configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    def add_mode_option(sub):
        sub.add_argument(
            '--mode',
            choices=['queue', 'polling', 'auto'],
            help='Scheduler implementation (default: from config)'
        )

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Log to the console only'
    )
    add_mode_option(start_parser)
    start_parser.add_argument(
        '--workers',
        type=int,
        help='Concurrent queue workers (default: from config)'
    )
    start_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )
    start_parser.set_defaults(func=cmd_start)

    # Stop / status
    stop_parser = subparsers.add_parser('stop', help='Stop the scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    # Schedule / reschedule
    for name, help_text in (
        ('schedule', 'Schedule delivery of a message'),
        ('reschedule', 'Move delivery of a message to a new time'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('message_id', help='Message ID')
        sub.add_argument('--at', required=True, help='Delivery time (ISO 8601)')
        sub.add_argument('--tz', default='UTC', help='Timezone for a --at without offset')
        add_mode_option(sub)
        sub.set_defaults(func=cmd_schedule)

    # Cancel
    cancel_parser = subparsers.add_parser('cancel', help='Cancel delivery of a message')
    cancel_parser.add_argument('message_id', help='Message ID')
    add_mode_option(cancel_parser)
    cancel_parser.set_defaults(func=cmd_cancel)

    # List
    list_parser = subparsers.add_parser('list', help='List pending deliveries')
    list_parser.add_argument('--from', dest='start', help='Window start (ISO 8601)')
    list_parser.add_argument('--to', dest='end', help='Window end (ISO 8601)')
    list_parser.add_argument('--tz', default='UTC', help='Timezone for bounds without offset')
    list_parser.add_argument('--json', action='store_true', help='Output as JSON')
    add_mode_option(list_parser)
    list_parser.set_defaults(func=cmd_list)

    # Run once
    run_once_parser = subparsers.add_parser('run-once', help='Deliver everything due now and exit')
    add_mode_option(run_once_parser)
    run_once_parser.set_defaults(func=cmd_run_once)

    # History
    history_parser = subparsers.add_parser('history', help="Show a message's delivery attempts")
    history_parser.add_argument('message_id', help='Message ID')
    history_parser.add_argument('--json', action='store_true', help='Output as JSON')
    history_parser.set_defaults(func=cmd_history)

    # Config commands
    init_parser = subparsers.add_parser('init', help='Initialize scheduler configuration')
    init_parser.set_defaults(func=cmd_init)

    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
