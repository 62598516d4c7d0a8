"""Run the print agent.

    python -m print_agent --server-url http://host:8000 --api-key pb_...
"""

import argparse
import asyncio
import logging
import sys

from print_agent.config import AgentSettings
from print_agent.service import PrintAgent


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


async def _run(agent: PrintAgent, once: bool) -> None:
    if once:
        await agent.announce_printers()
        executed = await agent.poll_once()
        await agent.client.close()
        logging.getLogger(__name__).info("Pickup run executed %s job(s)", executed)
        return
    await agent.run()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Receive print jobs and send them to local printers")
    parser.add_argument("--server-url", help="Server base URL (default: PRINT_AGENT_SERVER_URL)")
    parser.add_argument("--api-key", help="API key (default: PRINT_AGENT_API_KEY)")
    parser.add_argument("--dry-run", action="store_true", help="Log jobs instead of printing them")
    parser.add_argument("--once", action="store_true", help="Run a single pickup and exit")
    parser.add_argument(
        "--printer", action="append", dest="printers", metavar="NAME", help="Local printer to announce (repeatable)"
    )
    parser.add_argument("--log-level", help="Logging level (default: PRINT_AGENT_LOG_LEVEL)")
    args = parser.parse_args(argv)

    overrides = {}
    if args.server_url:
        overrides["server_url"] = args.server_url
    if args.api_key:
        overrides["api_key"] = args.api_key
    if args.dry_run:
        overrides["dry_run"] = True
    if args.printers:
        overrides["printers"] = args.printers
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = AgentSettings(**overrides)

    configure_logging(settings.log_level)
    if not settings.api_key:
        print("An API key is required (--api-key or PRINT_AGENT_API_KEY)", file=sys.stderr)
        return 2

    agent = PrintAgent(settings)
    try:
        asyncio.run(_run(agent, args.once))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
