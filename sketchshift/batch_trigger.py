"""
Batch trigger: publishes one batch_conversion message when enough
conversion jobs are waiting.

    sketchshift-batch --batch-size 20 --threshold 100 [--force] [--kind image]

Meant to run from cron. Exit code 1 on any setup failure.
"""
import argparse
import logging
import sys
from typing import List, Optional

from sketchshift.errors import PersistenceError, TransportError

log = logging.getLogger("sketchshift.batch_trigger")

DEFAULT_BATCH_SIZE = 20
DEFAULT_THRESHOLD = 100


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dispatch a deferred conversion batch")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE,
                        help="number of jobs a worker should convert per batch")
    parser.add_argument("--threshold", type=int, default=DEFAULT_THRESHOLD,
                        help="pending job count that triggers a batch")
    parser.add_argument("--force", action="store_true",
                        help="dispatch regardless of the pending count")
    parser.add_argument("--kind", choices=["image", "script"], default="image",
                        help="which job store to inspect")
    return parser


def main(argv: Optional[List[str]] = None, repo=None, publisher=None) -> int:
    args = build_parser().parse_args(argv)

    if args.batch_size <= 0:
        print("--batch-size must be positive", file=sys.stderr)
        return 1

    # Config is validated at import time
    try:
        from sketchshift import config
    except RuntimeError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 1

    config.configure_logging()

    from botocore.exceptions import BotoCoreError, ClientError

    from sketchshift.services.batch import BatchDispatcher, SqsPublisher

    if repo is None:
        # An in-memory store in this process never sees the API's jobs
        if config.JOB_STORE != "redis":
            log.error("batch trigger needs JOB_STORE=redis, got %r", config.JOB_STORE)
            return 1

        from sketchshift.repos.jobs import get_job_repo
        try:
            repo = get_job_repo(args.kind)
        except (RuntimeError, PersistenceError) as e:
            log.error("job store initialisation failed: %s", e)
            return 1

    if publisher is None:
        try:
            publisher = SqsPublisher()
        except (RuntimeError, BotoCoreError, ClientError) as e:
            log.error("queue session initialisation failed: %s", e)
            return 1

    dispatcher = BatchDispatcher(repo, publisher, batch_size=args.batch_size, threshold=args.threshold)
    try:
        result = dispatcher.run(force=args.force)
    except PersistenceError as e:
        log.error("could not count pending jobs: %s", e)
        return 1
    except TransportError as e:
        log.error("batch dispatch failed: %s", e)
        return 1

    if result.sent:
        log.info("batch dispatched for %d pending %s jobs", result.pendingCount, result.kind)
    return 0


if __name__ == "__main__":
    sys.exit(main())
