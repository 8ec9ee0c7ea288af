import argparse
import asyncio
import logging
import sys
from typing import Any, List, Optional

from featured_properties import expire_overdue

logger = logging.getLogger("cleanup_featured")


async def run(db: Any, dry_run: bool) -> List[str]:
    ids = await expire_overdue(db, dry_run=dry_run)
    if not ids:
        print("No expired featured properties found.")
        return ids
    verb = "Would expire" if dry_run else "Expired"
    for featured_id in ids:
        print(f"{verb} featured property {featured_id}")
    print(f"{verb} {len(ids)} featured properties.")
    return ids


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Mark featured properties past their end date as expired.")
    p.add_argument("--dry-run", action="store_true", help="list what would expire without writing")
    args = p.parse_args(argv)

    # server picks Mongo or the in-memory store from the same .env
    import server

    logger.info("Featured cleanup against %s store (dry_run=%s)", server.DATA_SOURCE, args.dry_run)
    try:
        asyncio.run(run(server.db, args.dry_run))
    except Exception as exc:
        print(f"Featured cleanup failed: {exc}", file=sys.stderr)
        return 1
    finally:
        if server.client:
            server.client.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
