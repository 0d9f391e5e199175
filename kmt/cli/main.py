"""
Kafka Message Tool command line.

Usage:
    kmt <command> [options]

Commands:
    version         Show version
    cluster         Describe the cluster (nodes, controller, topic settings)
    topics          List, create or delete topics
    group           Describe or list consumer groups
    send            Send a message (optionally repeated)
    listen          Print messages received on a topic

Examples:
    kmt topics list --host kafka --port 9092
    kmt topics create orders --partitions 3
    kmt send orders "hello" --key k1 --repeat 5
    kmt listen orders --max-messages 10 --duration 30
    kmt group describe kmt-cg
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Awaitable, Callable

from kmt.config import Settings, configure, configure_logging, get_settings
from kmt.exceptions import KmtException
from kmt.models import (
    DEFAULT_CONSUMER_GROUP_ID,
    DEFAULT_FETCH_TIMEOUT_MS,
    DEFAULT_HOSTNAME,
    DEFAULT_MESSAGE_KEY,
    DEFAULT_PORT,
    BrokerConfig,
    ListenerConfig,
    SenderConfig,
    TopicConfig,
)
from kmt.topics import TopicState


# Output colors
class Colors:
    HEADER = '\033[95m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def color(text: str, c: str) -> str:
    return f"{c}{text}{Colors.ENDC}"


def success(text: str) -> str:
    return color(text, Colors.GREEN)


def error(text: str) -> str:
    return color(text, Colors.FAIL)


def warning(text: str) -> str:
    return color(text, Colors.WARNING)


def info(text: str) -> str:
    return color(text, Colors.CYAN)


def bold(text: str) -> str:
    return color(text, Colors.BOLD)


# =============================================================================
# Helpers
# =============================================================================

def _settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if getattr(args, "backend", None):
        overrides["kafka_backend"] = args.backend
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level
    settings = configure(**overrides) if overrides else get_settings()
    configure_logging(settings)
    return settings


def _broker(args: argparse.Namespace) -> BrokerConfig:
    return BrokerConfig(
        name=args.broker_name or f"{args.host}:{args.port}",
        hostname=args.host,
        port=args.port,
    )


def _topic(args: argparse.Namespace, name: str, **kwargs: Any) -> TopicConfig:
    return TopicConfig(name=name, topic_name=name, broker=_broker(args), **kwargs)


def _pairs(values: list[str] | None, option: str) -> dict[str, str]:
    result = {}
    for value in values or []:
        key, sep, val = value.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"{option} expects key=value, got '{value}'")
        result[key] = val
    return result


def _run(args: argparse.Namespace, command: Callable[..., Awaitable[int]]) -> int:
    """Run ``command(coordinator)`` and render coordinator errors."""
    from kmt.coordinator import BrokerOperationsCoordinator

    settings = _settings(args)

    async def run() -> int:
        async with BrokerOperationsCoordinator(settings) as coordinator:
            return await command(coordinator)

    try:
        return asyncio.run(run())
    except KmtException as e:
        print(error(f"{type(e).__name__}: {e.message}"))
        for key, value in e.details.items():
            print(info(f"  {key}: {value}"))
        return 1
    except KeyboardInterrupt:
        print(info("Interrupted."))
        return 130


# =============================================================================
# Commands
# =============================================================================

def cmd_version(args: argparse.Namespace) -> int:
    """Show version."""
    from kmt import __version__
    print(f"Kafka Message Tool {bold(__version__)}")
    return 0


def cmd_cluster(args: argparse.Namespace) -> int:
    """Describe the cluster."""
    async def describe(coordinator) -> int:
        summary = await coordinator.connect(_broker(args))

        print()
        print(bold(f"Cluster {summary.cluster_id}"))
        print("=" * 50)
        for node in summary.nodes:
            marker = success(" (controller)") if node.is_controller else ""
            print(f"  [{node.node_id}] {node.host}:{node.port}{marker}")
        print()
        print(f"  Topic deletion enabled:      {summary.topic_deletion_enabled.value}")
        print(f"  Topic auto-creation enabled: {summary.topic_auto_creation_enabled.value}")
        print(f"  Topics:                      {len(summary.topics)}")

        inconsistent = summary.inconsistent_properties()
        if inconsistent:
            print()
            print(warning("Properties that differ between nodes:"))
            for name in inconsistent:
                print(f"  {name}")
        return 0

    return _run(args, describe)


def cmd_topics_list(args: argparse.Namespace) -> int:
    """List topics."""
    async def list_topics(coordinator) -> int:
        topics = await coordinator.list_topics(_broker(args))

        print()
        print(bold("Kafka Topics"))
        print("=" * 50)
        if not topics:
            print(info("No topics found."))
            return 0

        print(f"{'Topic':<40} {'Partitions':<12} {'Replication':<12}")
        print("-" * 64)
        for topic in topics:
            print(f"{topic.name:<40} {topic.partitions:<12} {topic.replication_factor:<12}")
        return 0

    return _run(args, list_topics)


def cmd_topics_create(args: argparse.Namespace) -> int:
    """Create a topic."""
    topic = _topic(
        args,
        args.name,
        partitions=args.partitions,
        replication_factor=args.replication,
        configs=_pairs(args.config, "--config"),
    )

    async def create(coordinator) -> int:
        print()
        print(bold(f"Creating Topic: {args.name}"))
        print("=" * 50)

        outcome = await coordinator.create_topic(topic)
        state = coordinator.topic_state(topic.broker, args.name)
        if outcome.ok:
            print(success(f"Topic '{args.name}' created successfully."))
            print(info(f"  Partitions: {args.partitions}"))
            print(info(f"  Replication: {args.replication}"))
            return 0
        if state is TopicState.PRESENT:
            print(warning(f"Topic '{args.name}' already exists."))
            return 0
        print(error(f"Topic '{args.name}' {outcome.status.value}: {outcome.error}"))
        print(info(f"  State: {state.value}"))
        return 1

    return _run(args, create)


def cmd_topics_delete(args: argparse.Namespace) -> int:
    """Delete a topic."""
    if not args.yes:
        print()
        print(warning(f"This will delete topic '{args.name}' and all its data."))
        confirm = input("Are you sure? (y/N): ")
        if confirm.lower() != "y":
            print(info("Aborted."))
            return 0

    async def delete(coordinator) -> int:
        print()
        print(bold(f"Deleting Topic: {args.name}"))

        outcome = await coordinator.delete_topic(_broker(args), args.name)
        if outcome.ok:
            print(success(f"Topic '{args.name}' deleted."))
            return 0
        print(error(f"Topic '{args.name}' {outcome.status.value}: {outcome.error}"))
        return 1

    return _run(args, delete)


def cmd_group_describe(args: argparse.Namespace) -> int:
    """Describe a consumer group."""
    async def describe(coordinator) -> int:
        group = await coordinator.describe_consumer_group(_broker(args), args.group_id)

        print()
        title = f"Consumer Group: {group.group_id} ({group.state})"
        print(bold(title) + (warning("  [stale]") if group.stale else ""))
        print("=" * 50)
        if not group.members:
            print(info("No active members."))
            return 0

        for member in group.members:
            print(f"  {member.client_id} {info(member.host)}")
            if not member.assignments:
                print(warning("    no partitions assigned"))
            for a in member.assignments:
                lag = "-" if a.lag is None else str(a.lag)
                print(f"    {a.topic}[{a.partition}] offset={a.offset} end={a.end_offset} lag={lag}")
        print()
        print(f"  Total lag: {group.total_lag}")
        return 0

    return _run(args, describe)


def cmd_group_list(args: argparse.Namespace) -> int:
    """List consumer groups."""
    async def list_groups(coordinator) -> int:
        groups = await coordinator.list_consumer_groups(_broker(args))
        print()
        print(bold("Consumer Groups"))
        print("=" * 50)
        if not groups:
            print(info("No consumer groups found."))
        for group_id in groups:
            print(f"  {group_id}")
        return 0

    return _run(args, list_groups)


def cmd_send(args: argparse.Namespace) -> int:
    """Send a message."""
    config = SenderConfig(
        name="cli-sender",
        topic=_topic(args, args.topic),
        message_key=args.key,
        message_template=args.value,
        headers=_pairs(args.header, "--header"),
        repeat_count=args.repeat,
        simulate=args.simulate,
    )

    async def send(coordinator) -> int:
        sender = await coordinator.start_sender(config)
        outcomes = await sender.send_configured()
        await sender.stop()

        for outcome in outcomes:
            if outcome.ok:
                result = outcome.value
                print(success(f"  sent to {result.topic}[{result.partition}] @ {result.offset}"))
            else:
                print(error(f"  {outcome.status.value}: {outcome.error}"))
        if config.simulate:
            print(info(f"Simulated {config.repeat_count} message(s)."))
        return 0 if all(o.ok for o in outcomes) else 1

    return _run(args, send)


def cmd_listen(args: argparse.Namespace) -> int:
    """Print messages received on a topic."""
    config = ListenerConfig(
        name="cli-listener",
        topic=_topic(args, args.topic),
        consumer_group=args.group,
        fetch_timeout_ms=args.fetch_timeout,
        offset_reset=args.offset_reset,
        max_messages=args.max_messages,
    )

    async def listen(coordinator) -> int:
        listener = await coordinator.start_listener(config)
        print(info(f"Listening on '{args.topic}' as group '{args.group}'..."))

        async def stop_after(seconds: float) -> None:
            await asyncio.sleep(seconds)
            await listener.stop()

        stopper = asyncio.create_task(stop_after(args.duration)) if args.duration else None
        try:
            async for message in listener.subscribe():
                print(message.format())
        finally:
            if stopper is not None:
                stopper.cancel()

        if listener.cause is not None:
            print(error(f"Listener failed: {listener.cause}"))
            return 1
        print(info(f"Received {listener.received_count} message(s)."))
        return 0

    return _run(args, listen)


# =============================================================================
# Parser
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kmt",
        description="Kafka Message Tool - topics, consumer groups and messages from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kmt cluster                          Describe the cluster
  kmt topics create orders -p 3        Create a topic
  kmt send orders "hello" --repeat 5   Send a message five times
  kmt listen orders --max-messages 10  Print ten messages
        """,
    )
    parser.add_argument("-v", "--version", action="store_true", help="Show version")
    parser.add_argument("--backend", choices=["aiokafka", "confluent"], help="Kafka client library")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )

    connection = argparse.ArgumentParser(add_help=False)
    connection.add_argument("--host", default=DEFAULT_HOSTNAME, help=f"Broker host (default: {DEFAULT_HOSTNAME})")
    connection.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Broker port (default: {DEFAULT_PORT})")
    connection.add_argument("--broker-name", help="Name of the broker config (default: host:port)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # version
    version_parser = subparsers.add_parser("version", help="Show version")
    version_parser.set_defaults(func=cmd_version)

    # cluster
    cluster_parser = subparsers.add_parser("cluster", parents=[connection], help="Describe the cluster")
    cluster_parser.set_defaults(func=cmd_cluster)

    # topics
    topics_parser = subparsers.add_parser("topics", help="Manage topics")
    topics_sub = topics_parser.add_subparsers(dest="topics_command")

    topics_list = topics_sub.add_parser("list", parents=[connection], help="List topics")
    topics_list.set_defaults(func=cmd_topics_list)

    topics_create = topics_sub.add_parser("create", parents=[connection], help="Create a topic")
    topics_create.add_argument("name", help="Topic name")
    topics_create.add_argument("-p", "--partitions", type=int, default=1, help="Number of partitions")
    topics_create.add_argument("-r", "--replication", type=int, default=1, help="Replication factor")
    topics_create.add_argument("-c", "--config", action="append", metavar="KEY=VALUE", help="Topic config entry")
    topics_create.set_defaults(func=cmd_topics_create)

    topics_delete = topics_sub.add_parser("delete", parents=[connection], help="Delete a topic")
    topics_delete.add_argument("name", help="Topic name")
    topics_delete.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")
    topics_delete.set_defaults(func=cmd_topics_delete)

    # group
    group_parser = subparsers.add_parser("group", help="Consumer groups")
    group_sub = group_parser.add_subparsers(dest="group_command")

    group_describe = group_sub.add_parser("describe", parents=[connection], help="Describe a consumer group")
    group_describe.add_argument("group_id", help="Consumer group ID")
    group_describe.set_defaults(func=cmd_group_describe)

    group_list = group_sub.add_parser("list", parents=[connection], help="List consumer groups")
    group_list.set_defaults(func=cmd_group_list)

    # send
    send_parser = subparsers.add_parser("send", parents=[connection], help="Send a message")
    send_parser.add_argument("topic", help="Topic name")
    send_parser.add_argument("value", help="Message value")
    send_parser.add_argument("-k", "--key", default=DEFAULT_MESSAGE_KEY, help=f"Message key (default: {DEFAULT_MESSAGE_KEY})")
    send_parser.add_argument("-H", "--header", action="append", metavar="KEY=VALUE", help="Message header")
    send_parser.add_argument("-n", "--repeat", type=int, default=1, help="How many times to send")
    send_parser.add_argument("--simulate", action="store_true", help="Log instead of sending")
    send_parser.set_defaults(func=cmd_send)

    # listen
    listen_parser = subparsers.add_parser("listen", parents=[connection], help="Print received messages")
    listen_parser.add_argument("topic", help="Topic name")
    listen_parser.add_argument("-g", "--group", default=DEFAULT_CONSUMER_GROUP_ID, help=f"Consumer group (default: {DEFAULT_CONSUMER_GROUP_ID})")
    listen_parser.add_argument("--offset-reset", choices=["earliest", "latest"], default="earliest")
    listen_parser.add_argument("--fetch-timeout", type=int, default=DEFAULT_FETCH_TIMEOUT_MS, help="Poll timeout in ms")
    listen_parser.add_argument("-m", "--max-messages", type=int, help="Stop after this many messages")
    listen_parser.add_argument("-d", "--duration", type=float, help="Stop after this many seconds")
    listen_parser.set_defaults(func=cmd_listen)

    return parser


def cli(args: list[str] | None = None) -> int:
    """Run the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if parsed_args.version:
        return cmd_version(parsed_args)

    if not parsed_args.command:
        parser.print_help()
        return 0

    if not hasattr(parsed_args, "func"):
        # "topics" or "group" without a subcommand
        parser.parse_args([parsed_args.command, "--help"])
        return 0

    try:
        return parsed_args.func(parsed_args)
    except argparse.ArgumentTypeError as e:
        print(error(str(e)))
        return 2


def main():
    """Entry point."""
    sys.exit(cli())


if __name__ == "__main__":
    main()
