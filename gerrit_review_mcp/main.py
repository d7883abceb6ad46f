import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

from .config import AgentSettings, ConfigError, Credentials, logger
from .gateway import RestGateway
from .review import ReviewError, ReviewSession, run_review
from .server import GerritReviewServer
from .supervisor import AgentError, AgentSupervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gerrit-review-mcp",
        description="Gerrit MCP tool server and AI review runner",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the Gerrit MCP tool server on stdin/stdout")

    review = sub.add_parser("review", help="Run an AI review of one change")
    review.add_argument("change", help="Gerrit change number or Change-Id")
    review.add_argument("--model", default=None, help="Agent model id (default: GERRIT_AI_REVIEW_MODEL or auto)")
    review.add_argument("--checked-out", action="store_true",
                        help="The change is checked out in the workspace; read files locally")
    review.add_argument("--workspace", type=Path, default=None, help="Workspace root (default: current directory)")
    review.add_argument("--timeout", type=float, default=None, help="Agent timeout in seconds")
    return parser


async def serve():
    """Main entry point for the Gerrit MCP tool server"""
    logger.info("🎬 STARTING Gerrit review MCP Server...")
    logger.info(f"Python version: {sys.version}")
    logger.info(f"Platform: {sys.platform}")
    logger.info(f"Working directory: {os.getcwd()}")

    credentials = Credentials.from_env()
    server = GerritReviewServer(RestGateway(credentials))
    await server.run()


def _print_progress(status: str) -> None:
    print(f"» {status}", file=sys.stderr, flush=True)


def _print_output(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def review(args: argparse.Namespace):
    """Run one review, cancelling gracefully on Ctrl-C"""
    credentials = Credentials.from_env()
    settings = AgentSettings.from_env()
    workspace = (args.workspace or Path.cwd()).resolve()

    session = ReviewSession(
        change_number=args.change,
        workspace=workspace,
        model=args.model if args.model is not None else settings.model,
        checked_out=args.checked_out,
    )
    supervisor = AgentSupervisor.from_settings(
        settings,
        cwd=workspace,
        on_progress=_print_progress,
        on_output=_print_output,
    )
    if args.timeout is not None:
        supervisor.timeout = args.timeout

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel_token.cancel)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handler support
        pass

    outcome = await run_review(session, credentials, supervisor)
    _print_progress(f"Done ({outcome.value})")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "serve":
            asyncio.run(serve())
        else:
            asyncio.run(review(args))
    except KeyboardInterrupt:
        logger.info("🛑 Stopped by user")
    except (ConfigError, ReviewError, AgentError) as e:
        logger.error(f"❌ {e}")
        return 1
    except Exception as e:
        logger.error(f"❌ Crashed: {e}")
        import traceback
        logger.error(traceback.format_exc())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
