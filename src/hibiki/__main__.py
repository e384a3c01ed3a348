"""hibiki entry point: compile chat requests and parse completions from the shell."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from hibiki.chat.compiler import compile_chat
from hibiki.chat.formats import ChatFormat
from hibiki.chat.parser import parse_chat_message
from hibiki.chat.templates import resolve_template_set
from hibiki.config import HibikiConfig, load_config
from hibiki.errors import HibikiError

logger = logging.getLogger(__name__)


def _get_version() -> str:
    """Return the installed package version, or fall back to 'unknown'."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return f"hibiki {version('hibiki')}"
    except PackageNotFoundError:
        return "hibiki (unknown version, not installed as package)"


def _read_input(path: str | None) -> str:
    if path is None or path == "-":
        return sys.stdin.read()
    return Path(path).expanduser().read_text(encoding="utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hibiki",
        description="Compile chat requests into model prompts and parse completions back",
    )
    parser.add_argument("--version", "-V", action="version", version=_get_version())
    parser.add_argument("--config", "-c", help="Path to config.toml file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write all log messages (DEBUG level) to a file.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    compile_cmd = sub.add_parser("compile", help="Render a chat request into a prompt")
    source = compile_cmd.add_mutually_exclusive_group(required=True)
    source.add_argument("--model", "-m", help="GGUF model whose chat template is used")
    source.add_argument("--template-file", help="Jinja chat template file")
    compile_cmd.add_argument(
        "--template", "-t", help="Named template from the model metadata (e.g. tool_use)"
    )
    compile_cmd.add_argument("--bos-token", default=None, help="BOS text for --template-file")
    compile_cmd.add_argument("--eos-token", default=None, help="EOS text for --template-file")
    compile_cmd.add_argument(
        "request", nargs="?", help="Request JSON file (default: stdin)"
    )

    parse_cmd = sub.add_parser("parse", help="Parse a completion into a chat message")
    parse_cmd.add_argument(
        "--format", "-f", required=True,
        help="Format name (see 'hibiki formats') or its integer value",
    )
    parse_cmd.add_argument("completion", nargs="?", help="Completion text file (default: stdin)")

    sub.add_parser("formats", help="List the supported chat formats")
    return parser


def _format_arg(value: str) -> ChatFormat:
    if value.isdigit():
        return ChatFormat.from_int(int(value))
    return ChatFormat.from_label(value)


def _cmd_compile(args: argparse.Namespace, config: HibikiConfig) -> int:
    if args.template_file:
        model = {"tokenizer.chat_template": Path(args.template_file).expanduser().read_text(encoding="utf-8")}
    else:
        model = args.model
    template_set = resolve_template_set(
        model,
        args.template or config.chat.template or None,
        bos_token=args.bos_token if args.bos_token is not None else config.chat.bos_token,
        eos_token=args.eos_token if args.eos_token is not None else config.chat.eos_token,
    )
    params = compile_chat(
        template_set,
        _read_input(args.request),
        add_generation_prompt=config.chat.add_generation_prompt,
    )
    sys.stdout.write(params.prompt)
    sys.stdout.flush()
    print(f"format: {params.format.label} ({int(params.format)})", file=sys.stderr)
    return 0


def _cmd_parse(args: argparse.Namespace) -> int:
    message = parse_chat_message(_read_input(args.completion), _format_arg(args.format))
    print(json.dumps(message.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _cmd_formats() -> int:
    for fmt in ChatFormat.members():
        print(f"{int(fmt):>2}  {fmt.label}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Setup logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if args.log_file:
        file_handler = logging.FileHandler(args.log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config)
        match args.command:
            case "compile":
                return _cmd_compile(args, config)
            case "parse":
                return _cmd_parse(args)
            case "formats":
                return _cmd_formats()
    except (HibikiError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 1


if __name__ == "__main__":
    sys.exit(main())
