#!/usr/bin/env python3
"""Ask an ACP agent one question over stdio and print its answer.

This example demonstrates:
- a session pool owning one agent subprocess
- streamed assistant text through `Observer.on_stream_output`
- the final answer read back through the scratch file
- optional model selection and extra context blocks
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys
from typing import Any

from acp_agent_client import Observer, RequestContext, SessionPool

DEFAULT_PROMPT = "Explain in two sentences what a JSON-RPC notification is."


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the single-question example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--prompt", default=DEFAULT_PROMPT, help="Question to ask.")
    parser.add_argument(
        "--cmd",
        help="Command used to launch the agent, e.g. 'opencode acp'.",
    )
    parser.add_argument("--model", help="Model id to request.")
    parser.add_argument(
        "--context",
        action="append",
        default=[],
        help="Extra context block sent ahead of the prompt. Can be repeated.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Per-request timeout in seconds.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    """Send one request and wait for its completion."""
    command = shlex.split(args.cmd) if args.cmd else None
    loop = asyncio.get_running_loop()
    done: asyncio.Future[tuple[str, Any]] = loop.create_future()

    def _on_complete(status: str, payload: Any) -> None:
        if not done.done():
            done.set_result((status, payload))

    observer = Observer(
        on_stream_output=lambda text: print(text, end="", flush=True),
        on_complete=_on_complete,
    )
    context = RequestContext(model=args.model)
    context.add_context(*args.context)

    async with SessionPool.connect_stdio(
        command=command,
        request_timeout=args.timeout,
    ) as pool:
        await pool.make_request(args.prompt, context, observer)
        status, payload = await done

    print()
    if status != "success":
        print(f"[{status}] {payload}", file=sys.stderr)
        return 1
    print(f"[answer] {payload}")
    return 0


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        raise SystemExit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled request", file=sys.stderr)
        raise SystemExit(130)


if __name__ == "__main__":
    main()
