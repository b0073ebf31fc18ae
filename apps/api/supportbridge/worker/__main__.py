from __future__ import annotations

import argparse
import logging
import signal
import threading

from supportbridge.core.config import get_settings
from supportbridge.core.tracing import setup_process_tracing
from supportbridge.worker.discord_gateway import DiscordGateway
from supportbridge.worker.runner import Worker, WorkerConfig, run_until_idle


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m supportbridge.worker")
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Run every job that is currently due, then exit (cron-driven deployments).",
    )
    parser.add_argument("--concurrency", type=int, default=2)
    parser.add_argument(
        "--queue",
        action="append",
        dest="queues",
        help="Only poll this queue; repeat for several. Defaults to all queues.",
    )
    parser.add_argument("--poll-interval", type=float, default=0.5)
    parser.add_argument(
        "--no-discord-gateway",
        action="store_true",
        help="Do not open the Discord gateway connection from this worker.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = _parse_args(argv)
    settings = get_settings()
    setup_process_tracing(settings=settings)
    config = WorkerConfig(
        poll_interval_seconds=args.poll_interval,
        concurrency=args.concurrency,
        queues=tuple(args.queues) if args.queues else None,
    )

    if args.drain:
        run_until_idle(config=config)
        return

    worker = Worker(config)
    shutdown = threading.Event()

    def _request_shutdown(signum: int, _frame: object) -> None:
        logging.getLogger("supportbridge.worker").info("signal %s received, stopping", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    gateway = None
    if settings.ENABLE_DISCORD_GATEWAY and not args.no_discord_gateway:
        gateway = DiscordGateway(settings)
        gateway.start()

    worker.start()
    shutdown.wait()
    if gateway is not None:
        gateway.stop()
    worker.stop()


if __name__ == "__main__":
    main()
