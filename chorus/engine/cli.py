"""CLI entry point: run one agent turn against the file-backed store.

Usage:
    chorus "Explain the build setup"
    chorus --conversation-id c1 --agent-id reviewer "Review the last commit"
    chorus --config .chorus/chorus.yaml --prompt-file task.md
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from dataclasses import replace
from pathlib import Path

from chorus.adapters.event_bus import EventBus
from chorus.adapters.events import AgentStatusChanged, MessageAppended, StreamDelta
from .agent_manager import AgentManager
from .config import EngineConfig
from .models import TurnRequest
from .yaml_config import parse_permission_mode, load_yaml_config
from chorus.shared.services.conversation_store import ConversationStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chorus",
        description="Run a coding-agent CLI turn and record the conversation",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="The prompt to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file",
    )
    parser.add_argument(
        "--conversation-id", "-c",
        default=None,
        help="Conversation to continue (default: start a new one)",
    )
    parser.add_argument(
        "--agent-id",
        default="default",
        help="Agent identity (one live process per agent)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (engine, defaults, agents sections)",
    )
    parser.add_argument("--model", default=None, help="Model override")
    parser.add_argument(
        "--permission-mode",
        default=None,
        help="default, acceptEdits, bypassPermissions, or plan",
    )
    parser.add_argument(
        "--allowed-tools",
        default=None,
        help="Comma-separated tool allow list",
    )
    parser.add_argument(
        "--cwd",
        default=".",
        help="Working directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--store-dir",
        default=None,
        help="Conversation store directory (default: ~/.chorus/conversations)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def _resolve_prompt(inline: str | None, prompt_file: str | None) -> str:
    if inline and prompt_file:
        raise SystemExit("Error: pass a prompt or --prompt-file, not both")
    if prompt_file:
        path = Path(prompt_file)
        if not path.is_file():
            raise SystemExit(f"Error: prompt file not found: {prompt_file}")
        return path.read_text(encoding="utf-8").strip()
    if inline:
        return inline
    raise SystemExit("Error: no prompt given")


async def _print_events(bus: EventBus, agent_id: str, done: asyncio.Event) -> None:
    async for event in bus.consume():
        if isinstance(event, StreamDelta):
            sys.stdout.write(event.delta)
            sys.stdout.flush()
        elif isinstance(event, MessageAppended):
            msg_type = event.message.get("type")
            if msg_type in ("tool_use", "system", "error"):
                sys.stdout.write(f"\n[{msg_type}] {event.message.get('content', '')}\n")
        elif isinstance(event, AgentStatusChanged) and event.agent_id == agent_id:
            if event.status in ("ready", "error"):
                done.set()


async def run_turn(args: argparse.Namespace) -> int:
    prompt = _resolve_prompt(args.prompt, args.prompt_file)
    if args.config:
        chorus_config = load_yaml_config(args.config)
        config = chorus_config.engine
        settings = chorus_config.settings_for(args.agent_id)
    else:
        config = EngineConfig.from_env()
        settings = config.default_settings
    if args.store_dir:
        config.store_dir = args.store_dir

    overrides = {}
    if args.model:
        overrides["model"] = args.model
    if args.permission_mode:
        overrides["permission_mode"] = parse_permission_mode(args.permission_mode)
    if args.allowed_tools:
        overrides["allowed_tools"] = tuple(
            t.strip() for t in args.allowed_tools.split(",") if t.strip()
        )
    if overrides:
        settings = replace(settings, **overrides)

    store = ConversationStore(config.store_dir)
    conversation_id = args.conversation_id or uuid.uuid4().hex[:12]
    try:
        session = store.session_state(conversation_id)
    except ValueError as exc:
        raise SystemExit(f"Error: {exc}") from exc

    bus = EventBus()
    manager = AgentManager(store, config=config, event_callback=bus.make_callback())
    done = asyncio.Event()
    printer = asyncio.create_task(_print_events(bus, args.agent_id, done))

    request = TurnRequest(
        conversation_id=conversation_id,
        agent_id=args.agent_id,
        prompt=prompt,
        cwd=str(Path(args.cwd).resolve()),
        session=session,
        settings=settings,
    )
    try:
        handle = await manager.send_message(request)
        await handle.wait()
        await done.wait()
    finally:
        await manager.shutdown()
        bus.close()
        await asyncio.gather(printer, return_exceptions=True)

    print(f"\n\nConversation: {conversation_id}")
    return 0 if handle.error is None and handle.exit_code in (0, None) else 1


def main() -> None:
    args = build_parser().parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        sys.exit(asyncio.run(run_turn(args)))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
