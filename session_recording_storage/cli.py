"""Command line access to a recording store.

Usage:
    python -m session_recording_storage [--config settings.yaml] [--store-path DIR] ingest SESSION FILE
    python -m session_recording_storage events SESSION
    python -m session_recording_storage wait SESSION --count 3 --timeout 60

FILE is either a JSON request body (see ``request_parsing``) or a JSONL
file with one event (or envelope) per line. Without ``--config`` the
configuration comes from ``RECORDING_*`` environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import FlushPolicy, PipelineConfig, StoreBackend
from .exceptions import (
    InvalidInputError,
    PartialReadFailure,
    RecordingStorageError,
    SessionUnavailableError,
)
from .logging_utils import configure_structured_logging
from .pipeline import RecordingPipeline
from .reader import DEFAULT_TIMEOUT
from .request_parsing import parse_ingest_body

EXIT_OK = 0
EXIT_INVALID_INPUT = 1
EXIT_STORAGE_FAILURE = 2
EXIT_PARTIAL_READ = 3

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="session_recording_storage",
        description="Ingest and read session recordings.",
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--store-path", help="Use a local store rooted here")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")

    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest events from a file")
    ingest.add_argument("session_id")
    ingest.add_argument("file", type=Path)

    events = sub.add_parser("events", help="Print a session's ordered events as JSONL")
    events.add_argument("session_id")
    events.add_argument("--timeout", type=float, default=None)

    wait = sub.add_parser("wait", help="Poll until events become visible")
    wait.add_argument("session_id")
    wait.add_argument("--count", type=int, default=1)
    wait.add_argument("--timeout", type=float, default=60.0)
    wait.add_argument("--interval", type=float, default=1.0)

    return parser


def load_config(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig.from_environment()
    if args.store_path:
        config.store.backend = StoreBackend.LOCAL
        config.store.local_path = args.store_path
    # A one-shot process has nobody to wait for; write each request at once
    config.buffer.policy = FlushPolicy.DIRECT
    return config


def read_body(session_id: str, path: Path) -> Any:
    """Load an ingest file as a request body."""
    text = path.read_text(encoding="utf-8")
    if path.suffix != ".jsonl":
        return json.loads(text)
    items = [json.loads(line) for line in text.splitlines() if line.strip()]
    return {"sessionId": session_id, "events": items}


async def run(args: argparse.Namespace) -> int:
    config = load_config(args)
    async with RecordingPipeline.from_config(config) as pipeline:
        if args.command == "ingest":
            try:
                body = read_body(args.session_id, args.file)
            except (OSError, json.JSONDecodeError) as e:
                print(f"Cannot read {args.file}: {e}", file=sys.stderr)
                return EXIT_INVALID_INPUT
            session_id, envelopes = parse_ingest_body(body, args.session_id)
            receipt = await pipeline.ingest(session_id, envelopes)
            print(json.dumps({"status": receipt.status, "envelopes": receipt.envelope_count, "key": receipt.partition_key}))
            return EXIT_OK

        if args.command == "events":
            timeout = DEFAULT_TIMEOUT if args.timeout is None else args.timeout
            stream = await pipeline.get_events(args.session_id, timeout)
            out = sys.stdout.buffer
            for line in stream.iter_lines():
                out.write(line)
            out.flush()
            if stream.parse_errors:
                print(f"{stream.parse_errors} unparseable line(s) skipped", file=sys.stderr)
            return EXIT_OK

        if args.command == "wait":
            stream = await pipeline.wait_for_events(
                args.session_id, args.count, args.timeout, args.interval
            )
            print(f"{len(stream)} event(s) visible for {args.session_id}")
            return EXIT_OK

    return EXIT_INVALID_INPUT


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_structured_logging(getattr(logging, str(args.log_level).upper(), logging.WARNING), stream=sys.stderr)

    try:
        return asyncio.run(run(args))
    except InvalidInputError as e:
        print(f"Invalid input: {e.reason}", file=sys.stderr)
        return EXIT_INVALID_INPUT
    except PartialReadFailure as e:
        sys.stdout.buffer.write(e.stream.to_jsonl())
        print(f"Incomplete: {e.reason}", file=sys.stderr)
        return EXIT_PARTIAL_READ
    except (SessionUnavailableError, TimeoutError, RecordingStorageError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_STORAGE_FAILURE


if __name__ == "__main__":
    sys.exit(main())
