#!/usr/bin/env python3
"""Rewrite every usage site of a symbol with one agent conversation each.

References are read from a JSON file holding LSP-shaped entries:
`[{"uri": "file:///path/a.py", "range": {"start": {"line": 4, "character": 0},
"end": {"line": 4, "character": 10}}}, ...]` (0-based lines).

This example demonstrates:
- parallel conversations over one shared agent (stdio or websocket)
- a sequential run with `--sequential`
- progress lines and change notifications
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import shlex
import sys
from typing import Any

from acp_agent_client import (
    AcpError,
    ChangeInfo,
    FileWorkspace,
    RefactorOrchestrator,
    SessionPool,
)


class _SequentialBackend:
    """Hides the pool's provider name so locations run one at a time."""

    provider_name = "sequential"

    def __init__(self, pool: SessionPool) -> None:
        self._pool = pool

    async def make_request(self, query: str, context: Any, observer: Any) -> Any:
        return await self._pool.make_request(query, context, observer)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the refactor example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("references", help="Path to a JSON file of references.")
    parser.add_argument("--prompt", default="", help="Extra instructions for the agent.")
    parser.add_argument(
        "--rule",
        action="append",
        default=[],
        help="Rule text sent as context to every conversation. Can be repeated.",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "websocket"],
        default="stdio",
        help="Channel used to reach the agent.",
    )
    parser.add_argument("--cmd", help="Agent command for stdio, e.g. 'opencode acp'.")
    parser.add_argument(
        "--url",
        default=os.getenv("ACP_AGENT_WS_URL", "ws://127.0.0.1:8765"),
        help="Websocket URL (used when --transport websocket).",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("ACP_AGENT_TOKEN"),
        help="Optional bearer token (used when --transport websocket).",
    )
    parser.add_argument("--model", help="Model id to request.")
    parser.add_argument("--sequential", action="store_true", help="Process one location at a time.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _print_change(change: ChangeInfo) -> None:
    print(f"[changed] {change.path}:{change.start_line}")


def _print_status(line: str) -> None:
    if line.startswith("Done "):
        print(f"[progress] {line}", file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    """Run the refactor and print a summary."""
    with open(args.references, encoding="utf-8") as handle:
        references = json.load(handle)

    if args.transport == "websocket":
        pool = SessionPool.connect_websocket(url=args.url, token=args.token)
    else:
        command = shlex.split(args.cmd) if args.cmd else None
        pool = SessionPool.connect_stdio(command=command)

    try:
        async with pool:
            backend: Any = _SequentialBackend(pool) if args.sequential else pool
            orchestrator = RefactorOrchestrator(
                backend,
                FileWorkspace(),
                status=_print_status,
                on_change=[_print_change],
                model=args.model,
                cwd=os.getcwd(),
            )
            result = await orchestrator.refactor(
                references,
                additional_prompt=args.prompt or None,
                rules=args.rule,
            )
    except AcpError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2

    print(
        "[summary]"
        f" locations={len(result.locations)}"
        f" applied={len(result.applied)}"
        f" failed={len(result.failed)}"
        f" saved={', '.join(result.saved) or '-'}"
    )
    return 0 if not result.failed else 1


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
