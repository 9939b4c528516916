"""
agentkit — run one conversational turn from the command line.

    python main.py SESSION PROMPT_FILE "message" [--router prompts/router.md] [--verbose]
"""

import argparse
import asyncio
import logging
import sys

from core import AgentCore, TurnError
from settings import load_settings

logger = logging.getLogger(__name__)


async def run_turn(args) -> str:
    settings = load_settings(args.config)
    core = AgentCore(settings)
    try:
        return await core.route_and_run(
            args.session, args.prompt, args.message,
            router_path=args.router,
            verbose=args.verbose or settings.verbose,
            extra_prompts=args.system or None,
            timeout=args.timeout,
        )
    finally:
        await core.shutdown()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one agent turn")
    parser.add_argument("session", help="Conversation session id")
    parser.add_argument("prompt", help="Pinned context prompt file")
    parser.add_argument("message", help="User message")
    parser.add_argument("--router", default=None,
                        help="Router instructions file; enables prompt routing")
    parser.add_argument("--system", action="append", default=[],
                        help="Extra system prompt (repeatable)")
    parser.add_argument("--timeout", type=float, default=None,
                        help="Turn deadline in seconds")
    parser.add_argument("--config", default=None, help="Path to agent.yaml")
    parser.add_argument("--verbose", action="store_true",
                        help="Print the JSON trace instead of the answer")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        print(asyncio.run(run_turn(args)))
    except TurnError as e:
        logger.error("Turn failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
