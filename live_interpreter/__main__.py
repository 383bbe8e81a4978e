"""
__main__.py — Live Interpreter · Command Line
=============================================
  live-interpreter run   [--config PATH] [--source LANG] [--target LANG] [--title TITLE]
  live-interpreter serve [--host HOST] [--port PORT]

`run` interprets from the default microphone to the default speaker and
prints each finalized transcript record; Ctrl+C stops and prints minutes.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from .config import InterpreterConfig, SupportedLanguage
from .engine import MeetingInterpreter
from .errors import InterpreterError
from .transcript import Role

log = logging.getLogger("live_interpreter.cli")


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if os.getenv("INTERPRETER_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )


def _print_records(records) -> None:
    for r in records:
        tag = "ORIGINAL  " if r.role is Role.USER else "TRANSLATED"
        print(f"[{r.timestamp:%H:%M:%S}] {tag} {r.text}", flush=True)


async def run(config: InterpreterConfig) -> int:
    interpreter = MeetingInterpreter(config)
    interpreter.on_records(_print_records)
    try:
        await interpreter.start()
    except InterpreterError as exc:
        log.error("event=start_failed kind=%s error=%s", exc.kind, exc)
        await interpreter.aclose()
        return 1

    try:
        await asyncio.Event().wait()
    finally:
        await interpreter.aclose()
        _, text = interpreter.minutes()
        print("\n" + text, flush=True)
    return 0


def _language(value: str) -> SupportedLanguage:
    for lang in SupportedLanguage:
        if lang.value.lower() == value.lower():
            return lang
    raise argparse.ArgumentTypeError(
        f"unsupported language {value!r}; choose from {', '.join(lang.value for lang in SupportedLanguage)}"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="live-interpreter", description=__doc__.split("\n")[1])
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="interpret from microphone to speaker")
    p_run.add_argument("--config", default=os.getenv("INTERPRETER_CONFIG", "interpreter_config.json"))
    p_run.add_argument("--source", type=_language)
    p_run.add_argument("--target", type=_language)
    p_run.add_argument("--title")

    p_serve = sub.add_parser("serve", help="run the HTTP control plane")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn
        uvicorn.run("live_interpreter.server:app", host=args.host, port=args.port)
        return 0

    _setup_logging()
    config = InterpreterConfig.load(args.config)
    meeting = {}
    if args.source:
        meeting["source_language"] = args.source.value
    if args.target:
        meeting["target_language"] = args.target.value
    if args.title:
        meeting["title"] = args.title
    if meeting:
        config = config.merge_patch({"meeting": meeting})

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        log.info("event=shutdown reason=keyboard_interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())
