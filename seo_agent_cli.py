import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from seo_agent.builtin_tools import build_default_registry
from seo_agent.catalog import DEFAULT_MODEL_ID, list_models
from seo_agent.config import AppSettings, load_settings
from seo_agent.events import Finish, StreamError, TextDelta, ToolCallComplete
from seo_agent.model_backend import build_backend
from seo_agent.runner import SEOAgent, error_kind
from seo_agent.schemas import Message, Step


def _load(args: argparse.Namespace) -> AppSettings:
    settings = load_settings(Path(args.config) if args.config else None)
    if args.model:
        settings.default_model = args.model
    return settings


def _print_step(step: Step) -> None:
    names = ", ".join(call.get("name") or "?" for call in step.tool_calls) or "-"
    failed = sum(1 for result in step.tool_results if not result.ok)
    print(f"[step {step.index}] {len(step.text)} chars, tools: {names}, failed: {failed}", file=sys.stderr)


def make_agent(settings: AppSettings) -> SEOAgent:
    return SEOAgent.from_settings(settings, on_step=_print_step)


async def _chat(args: argparse.Namespace) -> int:
    settings = _load(args)
    if args.max_steps is not None:
        settings.agent.max_steps = args.max_steps
    try:
        agent = make_agent(settings)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    messages = [Message(role="user", content=args.prompt)]
    try:
        if args.no_stream:
            result = await agent.chat(messages)
            print(result.final_text)
            if result.truncated:
                print(f"(stopped after {len(result.steps)} steps)", file=sys.stderr)
            return 0
        async for event in agent.chat(messages, stream=True):
            if isinstance(event, TextDelta):
                print(event.text, end="", flush=True)
            elif isinstance(event, ToolCallComplete):
                print(f"\n-> {event.call.name}({event.call.arguments_text})", file=sys.stderr)
            elif isinstance(event, StreamError):
                print(f"\n[primary run failed: {event.kind}; retrying without tools]", file=sys.stderr)
            elif isinstance(event, Finish):
                print()
        return 0
    except Exception as exc:
        print(f"Chat failed ({error_kind(exc)}): {exc}", file=sys.stderr)
        return 1
    finally:
        await agent.close()


def run_chat(args: argparse.Namespace) -> int:
    return asyncio.run(_chat(args))


def run_models(args: argparse.Namespace) -> int:
    settings = _load(args)
    for model in list_models():
        marker = "*" if model.id == settings.default_model else " "
        print(f"{marker} {model.id:<18} {model.provider:<7} tools={model.tool_mode:<9} {model.description}")
    return 0


def run_tools(args: argparse.Namespace) -> int:
    for schema in build_default_registry().schemas():
        required = ", ".join(schema.parameters.get("required") or [])
        print(f"{schema.name}: {schema.description} (required: {required or '-'})")
    return 0


async def _health(settings: AppSettings) -> int:
    backend = build_backend(settings)
    try:
        ok, detail = await backend.check()
    finally:
        await backend.close()
    if ok:
        print(f"{settings.default_model}: ok")
        return 0
    print(f"{settings.default_model}: unavailable ({detail})")
    return 1


def run_health(args: argparse.Namespace) -> int:
    return asyncio.run(_health(_load(args)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SEO agent CLI")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--model", default=None, help=f"Model id (default from settings, {DEFAULT_MODEL_ID})")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Ask the agent a question")
    chat.add_argument("prompt", help="User message")
    chat.add_argument("--max-steps", type=int, default=None, help="Max generate/tool steps (default from settings)")
    chat.add_argument("--no-stream", action="store_true", help="Print only the final answer")

    subparsers.add_parser("models", help="List known models")
    subparsers.add_parser("tools", help="List available tools")
    subparsers.add_parser("health", help="Probe the backend for the default model")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))
    if args.command == "chat":
        return run_chat(args)
    if args.command == "models":
        return run_models(args)
    if args.command == "tools":
        return run_tools(args)
    if args.command == "health":
        return run_health(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
