"""Command line interface for ad-hoc completions and cache inspection."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import SwitchboardConfig, load_config
from .core.errors import ConfigurationError, ProviderError
from .core.message import GenerateRequest
from .core.preferences import EndpointPreferenceCache
from .core.stream import StreamEvent, TextDelta, ToolCall
from .factory import PROVIDERS, ProviderFactory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="switchboard", description="Talk to LLM backends through one interface")
    parser.add_argument("-c", "--config", type=Path, help="TOML file with [llm.<profile>] tables")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ask_parser = subparsers.add_parser("ask", help="send one prompt and print the answer")
    ask_parser.add_argument("prompt", help="User prompt text")
    ask_parser.add_argument("--profile", help="Configuration profile to use")
    ask_parser.add_argument("--provider", choices=sorted(PROVIDERS), help="Override the configured provider")
    ask_parser.add_argument("--model", help="Override the configured model")
    ask_parser.add_argument("--system", help="System prompt")
    ask_parser.add_argument("--max-tokens", type=int, help="Max output tokens for this request")
    ask_parser.add_argument(
        "--stream",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Print tokens as they arrive",
    )

    cache_parser = subparsers.add_parser("cache", help="inspect endpoint preference caches")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_subparsers.add_parser("show", help="list cached wire shapes per model")
    forget_parser = cache_subparsers.add_parser("forget", help="drop the cached shape for a model")
    forget_parser.add_argument("model", help="Model identifier to forget")
    return parser


def _load(args: argparse.Namespace) -> SwitchboardConfig:
    if args.config is None:
        return SwitchboardConfig()
    return load_config(args.config)


def _print_event(event: StreamEvent) -> None:
    if isinstance(event, TextDelta):
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif isinstance(event, ToolCall):
        sys.stdout.write(f"\n[tool call] {event.name} {event.arguments_json}\n")


def _handle_ask(args: argparse.Namespace, config: SwitchboardConfig) -> int:
    profile = config.profile(args.profile)
    overrides = {key: value for key, value in (("provider", args.provider), ("model", args.model)) if value}
    if overrides:
        profile = profile.model_copy(update=overrides)

    factory = ProviderFactory(cache_dir=config.cache_dir, logging_config=config.llm_logging)
    provider = factory.create(profile)
    request = GenerateRequest.from_prompt(args.prompt, system=args.system, max_output_tokens=args.max_tokens)

    if args.stream:
        result = asyncio.run(provider.generate_streaming(request, _print_event))
        sys.stdout.write("\n")
    else:
        result = asyncio.run(provider.generate(request))
        sys.stdout.write(result.text + "\n")
        for call in result.tool_calls:
            sys.stdout.write(f"[tool call] {call.name} {call.arguments_json}\n")
    if result.usage is not None:
        print(
            f"[usage] input={result.usage.input_tokens} output={result.usage.output_tokens}",
            file=sys.stderr,
        )
    return 0


def _cache_files(config: SwitchboardConfig) -> list[Path]:
    names = sorted({info.cache_file for info in PROVIDERS.values() if info.cache_file})
    return [config.cache_dir / name for name in names]


def _handle_cache(args: argparse.Namespace, config: SwitchboardConfig) -> int:
    caches = [EndpointPreferenceCache(path) for path in _cache_files(config)]
    if args.cache_command == "show":
        for cache in caches:
            for model, shape in cache.items():
                print(f"{cache.path.name}\t{model}\t{shape}")
        return 0

    removed = [cache.path.name for cache in caches if cache.forget(args.model)]
    if not removed:
        print(f"no cached shape for {args.model}", file=sys.stderr)
        return 1
    print(f"forgot {args.model} in {', '.join(removed)}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        config = _load(args)
        if args.command == "ask":
            return _handle_ask(args, config)
        if args.command == "cache":
            return _handle_cache(args, config)
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except ProviderError as exc:
        print(f"error ({exc.kind.value}): {exc}", file=sys.stderr)
        return 1
    parser.error("no command provided")
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
