"""Command line entry point: greypool daemon|fsck|remove-drive|status."""

import argparse
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from .api import create_app
from .config_manager import ConfigManager
from .exceptions import GreypoolError
from .logging_config import configure_logging
from .models import Task, TaskOption, TaskOptions, TaskType
from .service import PoolService

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/etc/greypool/greypool.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="greypool", description="Replicated storage pool daemon")
    parser.add_argument(
        "-c", "--config",
        default=os.getenv("GREYPOOL_CONFIG", DEFAULT_CONFIG_FILE),
        help="Path to the JSON configuration file",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("daemon", help="Run the task dispatcher, scheduler and HTTP API")

    fsck = subparsers.add_parser("fsck", help="Queue a consistency check")
    fsck.add_argument("--share", help="Only check this share")
    fsck.add_argument("--no-orphans", action="store_true", help="Do not walk drives looking for orphans")
    fsck.add_argument("--du", action="store_true", help="Report disk usage per share and drive")
    fsck.add_argument("--checksums", action="store_true", help="Validate copies by checksum")
    fsck.add_argument("--email", action="store_true", help="Mail the report when the check finishes")

    remove = subparsers.add_parser("remove-drive", help="Queue the removal of a pool drive")
    remove.add_argument("path", help="Mount path of the drive")
    remove.add_argument("--gone", action="store_true", help="The drive is already unreadable")

    subparsers.add_parser("status", help="Show drives and queue counters")
    return parser


def _fsck_options(args) -> TaskOptions:
    flags = set()
    if not args.no_orphans:
        flags.add(TaskOption.ORPHANED)
    if args.du:
        flags.add(TaskOption.DU)
    if args.checksums:
        flags.add(TaskOption.CHECKSUMS)
    if args.email:
        flags.add(TaskOption.EMAIL)
    return TaskOptions(frozenset(flags))


def run_daemon(service: PoolService) -> int:
    service.start()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    app = create_app(service)
    app.run(host=service.config.api_host, port=service.config.api_port)
    return 0


def run_fsck(service: PoolService, args) -> int:
    task = service.queue.enqueue(
        Task(type=TaskType.FSCK, share=args.share, options=_fsck_options(args))
    )
    print(f"Queued fsck of {args.share or 'all shares'} as task {task.id}")
    return 0


def run_remove_drive(service: PoolService, args) -> int:
    flags = frozenset() if args.gone else frozenset({TaskOption.DRIVE_IS_AVAILABLE})
    service.pool.get_drive(args.path)
    task = service.queue.enqueue(
        Task(type=TaskType.REMOVE_DRIVE, path=args.path, options=TaskOptions(flags))
    )
    print(f"Queued removal of {args.path} as task {task.id}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config_manager = ConfigManager(args.config)
        config = config_manager.load_config()
        configure_logging(config.log_level, config.log_json)

        service = PoolService(config_manager)
        if args.command == "daemon":
            return run_daemon(service)
        try:
            if args.command == "fsck":
                return run_fsck(service, args)
            if args.command == "remove-drive":
                return run_remove_drive(service, args)
            print(json.dumps(service.status(), indent=2))
            return 0
        finally:
            service.stop()
    except GreypoolError as e:
        print(f"greypool: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
