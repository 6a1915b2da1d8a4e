#!/usr/bin/env python3
"""
Title and Schedule Management Utility

This script provides utilities to:
- Run the title normalization sweep
- List releases whose stored titles still carry version noise
- Show schedule and store status
"""

import asyncio
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from utilities.logger import setup_logging
from utilities.config import config
from scheduler.scheduler_service import build_scheduler_service
from scheduler.title_matching import looks_uncleaned


async def normalize_titles(service):
    """Run the title normalization sweep once."""
    print("\n🧹 NORMALIZING TITLES")
    print("="*80)

    counts = await service.normalize_titles()
    print(f"📊 Processed: {counts['processed']}")
    print(f"✏️  Updated:   {counts['updated']}")
    print(f"⏭️  Skipped:   {counts['skipped']}")


async def list_uncleaned(service):
    """List active releases whose titles still carry version/build/group noise."""
    print("\n📋 RELEASES WITH UNCLEANED TITLES")
    print("="*80)

    releases = [r for r in await service.db_manager.get_all_active_releases() if looks_uncleaned(r.title)]
    if not releases:
        print("✅ All titles are clean")
        return

    for i, release in enumerate(releases, 1):
        print(f"{i:3d}. {release.title}")
        print(f"     Release ID: {release.release_id}")
        print(f"     Original:   {release.original_title or '-'}")
        print(f"     Cleaned:    {release.cleaned_title or '-'}")


async def show_status(service):
    """Show schedule and store statistics."""
    print("\n📊 STATUS")
    print("="*80)

    await service.load_schedule()
    status = service.status()
    stats = await service.db_manager.get_database_stats()

    print(f"Tracked releases:   {stats.get('total_releases', 0)}")
    print(f"Active releases:    {stats.get('active_releases', 0)}")
    print(f"Scheduled accounts: {status['scheduled_accounts']}")
    for entry in status['next_checks']:
        print(f"  {entry['account_id']}: {entry['cadence'].value} next at {entry['next_check']}")


COMMANDS = {
    'normalize': normalize_titles,
    'list': list_uncleaned,
    'status': show_status,
}


def show_usage():
    """Show usage information."""
    print("Title Management Utility")
    print("="*40)
    print("Usage: python manage_titles.py <command>")
    print()
    print("Commands:")
    print("  normalize  - Run the title normalization sweep")
    print("  list       - List releases with uncleaned titles")
    print("  status     - Show schedule and store status")


async def main():
    """Main function."""
    if len(sys.argv) != 2 or sys.argv[1].lower() not in COMMANDS:
        show_usage()
        sys.exit(1)

    setup_logging(log_level="WARNING", log_format="console", log_file=None, debug=False)

    service = build_scheduler_service(config)
    await service.db_manager.connect()
    try:
        await COMMANDS[sys.argv[1].lower()](service)
    except Exception as e:
        print(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        await service.db_manager.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
