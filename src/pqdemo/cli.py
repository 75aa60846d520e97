"""Command line entry points.

``pqdemo <variant> [options]`` runs one driver; each variant also has its own
console script (``pqdemo-publisher``, ``pqdemo-consumer-transacted`` ...).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from pqdemo import __version__
from pqdemo.config import load_config
from pqdemo.drivers import (
    BlockingPublisherDriver,
    ConsumerDriver,
    Driver,
    ListenerConsumerDriver,
    PublisherDriver,
    TransactedConsumerDriver,
)
from pqdemo.drivers.base import default_stdin
from pqdemo.drivers.result import ExecutionResult
from pqdemo.errors import BindError, ConfigInvalid, OperationNotSupported, TransportFatal
from pqdemo.models.config import DEFAULT_PUBLISH_RATE, Role
from pqdemo.transport import TRANSPORTS, create_transport

console = Console()
err_console = Console(stderr=True)
logger = logging.getLogger(__name__)

EXIT_BIND_FAILED = 1
EXIT_NOT_SUPPORTED = 2
EXIT_CONNECT_FAILED = 3


@dataclass(frozen=True)
class Variant:
    role: Role
    driver: type[Driver]
    default_rate: int
    help: str


VARIANTS: dict[str, Variant] = {
    "publisher": Variant(
        Role.PUBLISHER, PublisherDriver, DEFAULT_PUBLISH_RATE, "non-blocking publisher"
    ),
    "publisher-blocking": Variant(
        Role.PUBLISHER,
        BlockingPublisherDriver,
        DEFAULT_PUBLISH_RATE,
        "publisher that waits for each acknowledgment",
    ),
    "consumer": Variant(
        Role.CONSUMER, ConsumerDriver, ConsumerDriver.default_rate, "paced pull consumer"
    ),
    "consumer-transacted": Variant(
        Role.CONSUMER,
        TransactedConsumerDriver,
        TransactedConsumerDriver.default_rate,
        "transacted consumer committing every batch",
    ),
    "consumer-listener": Variant(
        Role.CONSUMER,
        ListenerConsumerDriver,
        ListenerConsumerDriver.default_rate,
        "consumer fed by pushed messages",
    ),
}


def _config_path(value: str) -> str:
    # Accept both ``-f path`` and ``-f=path``
    return value[1:] if value.startswith("=") else value


def add_common_arguments(parser: argparse.ArgumentParser, role: Role) -> None:
    if role is Role.PUBLISHER:
        parser.add_argument(
            "rate",
            nargs="?",
            default=None,
            help="messages per second, 1..1000 (default from config, else 10)",
        )
    parser.add_argument(
        "--env", action="store_true", help="read the configuration from environment variables"
    )
    parser.add_argument(
        "-f",
        "--file",
        dest="config_file",
        type=_config_path,
        default=None,
        help="properties or YAML file to read; takes precedence over --env",
    )
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        default=None,
        help="broker transport (default from config, else solace)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    parser.add_argument(
        "--duration", type=float, default=0, help="stop after this many seconds (0 = run forever)"
    )
    parser.add_argument(
        "--count", type=int, default=0, help="stop after this many messages (0 = no limit)"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pqdemo", description="Partitioned queue publish/consume drivers"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="variant", required=True)
    for name, variant in VARIANTS.items():
        sub = subparsers.add_parser(name, help=variant.help)
        add_common_arguments(sub, variant.role)
    return parser


def build_variant_parser(name: str) -> argparse.ArgumentParser:
    variant = VARIANTS[name]
    parser = argparse.ArgumentParser(prog=f"pqdemo-{name}", description=variant.help)
    add_common_arguments(parser, variant.role)
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def render_result(name: str, result: ExecutionResult) -> Table:
    table = Table(title=f"pqdemo {name}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Published", f"{result.messages_published:,}")
    table.add_row("Received", f"{result.messages_received:,}")
    table.add_row("Redeliveries", f"{result.redeliveries:,}")
    table.add_row("NACKs", f"{result.nacks:,}")
    table.add_row("ACK timeouts", f"{result.ack_timeouts:,}")
    table.add_row("Commits", f"{result.commits:,}")
    table.add_row("Commit failures", f"{result.commit_failures:,}")
    table.add_row("Duration", f"{result.duration_seconds:.1f}s")
    table.add_row("Final state", result.final_state.value)
    table.add_row("Stopped by", result.shutdown_reason or "-")
    return table


def run_variant(name: str, args: argparse.Namespace) -> int:
    configure_logging(args.log_level)
    variant = VARIANTS[name]

    try:
        config = load_config(
            variant.role,
            config_file=args.config_file,
            from_env=args.env,
            rate_arg=getattr(args, "rate", None),
            default_rate=variant.default_rate,
            transport=args.transport,
        )
        transport = create_transport(config)
    except ConfigInvalid as e:
        logger.error("%s", e)
        return e.exit_code

    logger.debug("Loaded configuration from %s", config.source)
    driver = variant.driver(config, transport, console=console, stdin=default_stdin())

    try:
        result = asyncio.run(driver.execute(args.duration, args.count))
    except (BindError, OperationNotSupported) as e:
        err_console.print(
            f"*** Could not establish a connection to queue '{config.queue_name}'",
            markup=False,
            highlight=False,
        )
        logger.error("%s", e)
        return EXIT_NOT_SUPPORTED if isinstance(e, OperationNotSupported) else EXIT_BIND_FAILED
    except TransportFatal as e:
        logger.error("Transport failure: %s", e)
        return EXIT_CONNECT_FAILED
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130

    console.print(render_result(name, result))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return run_variant(args.variant, args)


def _variant_main(name: str, argv: list[str] | None) -> int:
    return run_variant(name, build_variant_parser(name).parse_args(argv))


def publisher_main(argv: list[str] | None = None) -> int:
    return _variant_main("publisher", argv)


def blocking_publisher_main(argv: list[str] | None = None) -> int:
    return _variant_main("publisher-blocking", argv)


def consumer_main(argv: list[str] | None = None) -> int:
    return _variant_main("consumer", argv)


def transacted_consumer_main(argv: list[str] | None = None) -> int:
    return _variant_main("consumer-transacted", argv)


def listener_consumer_main(argv: list[str] | None = None) -> int:
    return _variant_main("consumer-listener", argv)
