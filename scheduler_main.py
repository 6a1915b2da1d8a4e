"""
Main entry point for the release update scheduler.

This script owns the scheduler service lifecycle: it connects the store,
starts the periodic jobs and stops them on SIGINT/SIGTERM.
"""

import asyncio
import signal
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import structlog
from utilities.logger import setup_logging
from utilities.config import config
from scheduler.scheduler_service import build_scheduler_service

USAGE = "Usage: python scheduler_main.py [--once [--account ACCOUNT_ID]]"


def parse_args(argv):
    """Return (run_once, account_id) from command line arguments."""
    run_once = False
    account_id = None
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg == '--once':
            run_once = True
        elif arg == '--account' and args:
            account_id = args.pop(0)
        else:
            raise ValueError(f"Unknown argument: {arg}")
    if account_id and not run_once:
        raise ValueError("--account requires --once")
    return run_once, account_id


async def run_once(service, account_id=None):
    """Run one cycle for an account, or for every scheduled account."""
    if account_id:
        summaries = [await service.check_now(account_id)]
    else:
        await service.load_schedule()
        summaries = await service.force_check_all()

    print("\n" + "="*60)
    print("🔄 CHECK CYCLE RESULTS")
    print("="*60)
    for summary in summaries:
        print(f"Account {summary.account_id}: checked={summary.checked} "
              f"updates={summary.updates_found} sequels={summary.sequels_found} failed={summary.failed}")
    if not summaries:
        print("No scheduled accounts")
    print("="*60)


async def main():
    """Main function to start the scheduler service."""
    try:
        run_once_mode, account_id = parse_args(sys.argv[1:])
    except ValueError as e:
        print(str(e))
        print(USAGE)
        sys.exit(1)

    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
        debug=config.debug
    )
    logger = structlog.get_logger(__name__)

    service = build_scheduler_service(config)
    await service.db_manager.connect()

    try:
        if run_once_mode:
            logger.info("Running in RUN ONCE MODE", account_id=account_id)
            await run_once(service, account_id)
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, stop_event.set)

        await service.start()
        logger.info("Scheduler running", status=service.status())
        await stop_event.wait()
        logger.info("Received shutdown signal, stopping...")

    except Exception as e:
        logger.error("Scheduler service failed", error=str(e))
        sys.exit(1)
    finally:
        service.stop()
        await service.db_manager.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
