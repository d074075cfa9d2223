"""Run queued campaign jobs: ``python -m app.worker [--once] [--concurrency N]``."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Optional, Sequence

import numpy as np
from sqlalchemy.orm import sessionmaker

from .core.logging_config import configure_logging
from .db.session import SessionLocal, init_db
from .services.campaign_service import register_handlers
from .services.dispatch_service import Dispatcher
from .services.messaging_service import BulkMessenger

LOGGER = logging.getLogger(__name__)


def create_dispatcher(
    session_factory: sessionmaker = SessionLocal,
    *,
    concurrency: Optional[int] = None,
    messenger: Optional[BulkMessenger] = None,
    rng: Optional[np.random.Generator] = None,
) -> Dispatcher:
    dispatcher = Dispatcher(session_factory, concurrency=concurrency, rng=rng)
    register_handlers(dispatcher, messenger or BulkMessenger.from_settings())
    return dispatcher


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Send queued salon broadcast messages.')
    parser.add_argument('--once', action='store_true', help='Run every due job, then exit')
    parser.add_argument('--concurrency', type=int, default=None, help='Max jobs executed at the same time')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    init_db()
    dispatcher = create_dispatcher(concurrency=args.concurrency)

    if args.once:
        dispatcher.requeue_stale()
        processed = dispatcher.drain()
        LOGGER.info('Processed %s job(s)', processed)
        return 0

    stop = threading.Event()

    def shutdown(signum, frame):
        LOGGER.info('Received signal %s, finishing current round', signum)
        stop.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    dispatcher.run_forever(stop)
    return 0


if __name__ == '__main__':
    sys.exit(main())
