"""
Command-line interface for inspecting workflow threads.

Usage:
    proposal-engine state user-1::rfp-42::proposal
    proposal-engine history user-1::rfp-42::proposal
    proposal-engine interrupt user-1::rfp-42::proposal
    proposal-engine replay user-1::rfp-42::proposal

Every command reads the checkpoint store configured in
~/.proposal_engine/configuration.json (or PROPOSAL_ENGINE_* variables).
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from proposal_engine.config import EngineConfig
from proposal_engine.graph.channels import replay
from proposal_engine.observability import configure_logging
from proposal_engine.storage.checkpoint_store import (
    CheckpointStore,
    create_backend,
    open_checkpoint_store,
)


def _load_config(args: argparse.Namespace) -> EngineConfig:
    """Configuration file and environment, then command-line overrides."""
    config = EngineConfig.load(Path(args.config) if args.config else None)
    if args.backend:
        config.checkpoint_backend = args.backend
    if args.checkpoint_dir:
        config.checkpoint_dir = Path(args.checkpoint_dir)
    if args.log_level:
        config.log_level = args.log_level
    return config


async def _open_store(args: argparse.Namespace) -> CheckpointStore:
    config = args.engine_config
    return await open_checkpoint_store(
        create_backend(config), fallback=False, retry_policy=config.store_retry
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _show_state(args: argparse.Namespace) -> int:
    store = await _open_store(args)
    try:
        checkpoint = await store.get(args.thread_id)
    finally:
        await store.close()
    if checkpoint is None:
        print(f"No checkpoints for {args.thread_id}", file=sys.stderr)
        return 1
    _print_json(checkpoint.channel_values)
    return 0


async def _show_history(args: argparse.Namespace) -> int:
    store = await _open_store(args)
    try:
        summaries = await store.list_summaries(args.thread_id)
    finally:
        await store.close()
    if not summaries:
        print(f"No checkpoints for {args.thread_id}", file=sys.stderr)
        return 1
    for summary in summaries[: args.limit]:
        flag = " [interrupted]" if summary.is_interrupted else ""
        print(
            f"{summary.sequence:>5}  step {summary.step:<4} {summary.source:<10} "
            f"{summary.node or '-':<26} next={summary.next_nodes} "
            f"status={summary.status}{flag}"
        )
    return 0


async def _show_interrupt(args: argparse.Namespace) -> int:
    store = await _open_store(args)
    try:
        checkpoint = await store.get(args.thread_id)
    finally:
        await store.close()
    if checkpoint is None:
        print(f"No checkpoints for {args.thread_id}", file=sys.stderr)
        return 1
    state = checkpoint.state()
    if not state.is_interrupted:
        print(f"{args.thread_id} is not interrupted (status: {state.status})")
        return 0
    _print_json(
        {
            "interrupt_status": state.interrupt_status.model_dump(mode="json"),
            "interrupt_metadata": (
                state.interrupt_metadata.model_dump(mode="json")
                if state.interrupt_metadata
                else None
            ),
        }
    )
    return 0


async def _replay(args: argparse.Namespace) -> int:
    store = await _open_store(args)
    try:
        history = await store.list(args.thread_id)
    finally:
        await store.close()
    if not history:
        print(f"No checkpoints for {args.thread_id}", file=sys.stderr)
        return 1

    rebuilt = replay(history)
    latest = history[0].state()
    if rebuilt != latest:
        print(f"✗ Replay of {len(history)} checkpoints does not match the latest state")
        return 2
    print(f"✓ Replay of {len(history)} checkpoints matches sequence {history[0].sequence}")
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """Register the thread inspection commands."""
    commands = (
        ("state", "Print the latest state of a thread", _show_state),
        ("history", "List a thread's checkpoints, most recent first", _show_history),
        ("interrupt", "Show the pending interrupt of a thread", _show_interrupt),
        ("replay", "Rebuild a thread's state from its recorded writes", _replay),
    )
    for name, help_text, handler in commands:
        parser = subparsers.add_parser(name, help=help_text)
        parser.add_argument("thread_id", help="owner::subject::kind thread id")
        if name == "history":
            parser.add_argument("--limit", type=int, default=50, help="Checkpoints to show")
        parser.set_defaults(func=lambda args, handler=handler: asyncio.run(handler(args)))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="proposal-engine",
        description="Inspect durable proposal workflow threads",
    )
    parser.add_argument("--config", help="Path to configuration.json")
    parser.add_argument("--backend", choices=["memory", "file", "http"], help="Checkpoint backend")
    parser.add_argument("--checkpoint-dir", help="Directory for the file backend")
    parser.add_argument(
        "--log-level", default=None, help="DEBUG, INFO, WARNING, ... (overrides configuration)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    args.engine_config = _load_config(args)
    configure_logging(level=args.engine_config.log_level, format=args.engine_config.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
