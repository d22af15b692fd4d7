# conveyor/core/cli.py
"""
CLI for conveyor worker, check, submit, list and watch commands.

Configuration comes from the environment (``CONVEYOR_*``) and an optional
``.env`` file in the working directory; see ``AppConfig``.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from conveyor.core.app import Conveyor
from conveyor.core.codec.serde import dumps_json
from conveyor.core.defaults import NORMAL_CLOSURE
from conveyor.core.errors import (
    ConfigurationError,
    ConveyorError,
    ErrorCode,
    StartupError,
    ValidationReport,
    install_error_handler,
)
from conveyor.core.logging import configure_logging, get_logger
from conveyor.core.models.app import AppConfig
from conveyor.core.types.result import is_err

_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

logger = get_logger('cli')


def _load_app(loglevel: str | None) -> Conveyor:
    """Build the app from the environment; exits 1 on invalid configuration."""
    try:
        config = AppConfig()
    except ConveyorError as e:
        print(e.render(), file=sys.stderr)
        sys.exit(1)
    except ValidationError as e:
        error = ConfigurationError(
            message='invalid configuration',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            help_text='check CONVEYOR_* environment variables and .env',
        )
        print(error.render(), file=sys.stderr)
        sys.exit(1)
    configure_logging(loglevel or config.log_level)
    return Conveyor(config)


def _run(app: Conveyor, main: Callable[[], Awaitable[int]]) -> int:
    """Run ``main`` after fatal startup checks; always release the broker."""

    async def _runner() -> int:
        try:
            await app.startup()
            return await main()
        finally:
            await app.shutdown()

    try:
        return asyncio.run(_runner())
    except StartupError as e:
        print(e.render(), file=sys.stderr)
        return 1


def worker_command(args: argparse.Namespace) -> None:
    """Handle worker command."""
    app = _load_app(args.loglevel)
    app.config.log_config(logger)
    worker = app.build_worker(consumer=args.consumer)

    async def run_worker() -> int:
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping worker...')
            worker.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await worker.run_forever()
        return 0

    logger.info(f'Starting worker {worker.consumer}')
    try:
        sys.exit(_run(app, run_worker))
    except KeyboardInterrupt:
        logger.info('Worker interrupted by user')


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate configuration without starting services."""
    app = _load_app(args.loglevel)
    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.render(), file=sys.stderr)
        sys.exit(1)
    suffix = ' (store reachable)' if args.live else ''
    print(f'ok: all validations passed{suffix}')
    sys.exit(0)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def submit_command(args: argparse.Namespace) -> None:
    """Handle submit command: admit one task through the admission gate."""
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except ValueError as e:
        print(
            ConfigurationError(
                message='--payload is not valid JSON',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[str(e)],
                help_text='e.g. --payload \'{"width": 800, "height": 600}\'',
            ).render(),
            file=sys.stderr,
        )
        sys.exit(1)
    app = _load_app(args.loglevel)

    async def submit() -> int:
        result = await app.get_controller().submit(
            {'type': args.type, 'payload': payload}, args.origin
        )
        if is_err(result):
            _print_json(result.err_value.to_body())
            return 1
        _print_json(result.ok_value.to_body())
        return 0

    sys.exit(_run(app, submit))


def list_command(args: argparse.Namespace) -> None:
    """Handle list command: print the most recent task records."""
    app = _load_app(args.loglevel)

    async def list_tasks() -> int:
        result = await app.get_controller().list_tasks(args.origin, limit=args.limit)
        if is_err(result):
            _print_json(result.err_value.to_body())
            return 1
        print(dumps_json(result.ok_value) if args.compact else json.dumps(result.ok_value, indent=2))
        return 0

    sys.exit(_run(app, list_tasks))


class _PrintObserver:
    """Status observer writing each event as one JSON line on stdout."""

    def __init__(self) -> None:
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send_text(self, data: str) -> None:
        print(data, flush=True)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = '') -> None:
        self._open = False


def watch_command(args: argparse.Namespace) -> None:
    """Handle watch command: stream status events until interrupted."""
    app = _load_app(args.loglevel)
    origin = args.origin or app.config.fanout.allowed_origins[0]

    async def watch() -> int:
        gateway = app.get_gateway()
        started = await gateway.start()
        if is_err(started):
            print(f'error: {started.err_value.message}', file=sys.stderr)
            return 1
        if not await gateway.connect(_PrintObserver(), origin):
            print(f'error: origin {origin!r} is not allowed', file=sys.stderr)
            return 1

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass
        await stop.wait()
        return 0

    sys.exit(_run(app, watch))


def _add_loglevel(parser: argparse.ArgumentParser, default: str | None) -> None:
    parser.add_argument(
        '--loglevel',
        choices=_LOG_LEVELS,
        default=default,
        type=str.upper,
        help=f'Logging level (default: {default or "CONVEYOR_LOG_LEVEL"})',
    )


def main() -> None:
    """Main CLI entry point."""
    install_error_handler()
    try:
        parser = argparse.ArgumentParser(
            prog='conveyor',
            description='Conveyor durable task queue - workers and admission',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Run one worker (one consumer in the shared group)
  conveyor worker

  # Validate configuration, optionally against the live database
  conveyor check --live

  # Submit a task and list recent ones
  conveyor submit image_resize --payload '{"width": 800, "height": 600, "scale": 0.5}'
  conveyor list --limit 10

  # Follow status changes as JSON lines
  conveyor watch
""",
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        worker_parser = subparsers.add_parser('worker', help='Start a conveyor worker')
        _add_loglevel(worker_parser, None)
        worker_parser.add_argument(
            '--consumer',
            default=None,
            help='Consumer name within the group (default: <host>-<pid>-<random>)',
        )

        check_parser = subparsers.add_parser(
            'check', help='Validate configuration without starting services'
        )
        _add_loglevel(check_parser, 'WARNING')
        check_parser.add_argument(
            '--live',
            action='store_true',
            default=False,
            help='Also check store connectivity (SELECT 1)',
        )

        submit_parser = subparsers.add_parser('submit', help='Submit one task')
        _add_loglevel(submit_parser, 'WARNING')
        submit_parser.add_argument('type', help='Task type, e.g. image_resize')
        submit_parser.add_argument('--payload', default=None, help='JSON object payload')
        submit_parser.add_argument(
            '--origin', default='cli', help='Origin used for rate limiting (default: cli)'
        )

        list_parser = subparsers.add_parser('list', help='List the most recent tasks')
        _add_loglevel(list_parser, 'WARNING')
        list_parser.add_argument('--limit', type=int, default=None, help='Maximum records')
        list_parser.add_argument('--origin', default='cli', help='Origin used for rate limiting')
        list_parser.add_argument(
            '--compact', action='store_true', default=False, help='Single-line JSON output'
        )

        watch_parser = subparsers.add_parser('watch', help='Stream task status events to stdout')
        _add_loglevel(watch_parser, 'WARNING')
        watch_parser.add_argument(
            '--origin',
            default=None,
            help='Origin presented to the status gateway (default: first allowed origin)',
        )

        args = parser.parse_args()

        match args.command:
            case 'worker':
                worker_command(args)
            case 'check':
                check_command(args)
            case 'submit':
                submit_command(args)
            case 'list':
                list_command(args)
            case 'watch':
                watch_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
