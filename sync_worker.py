#!/usr/bin/env python3
"""
Customer receipts sync worker

Keeps the local receipt cache warm by running the customer aggregate refresh
on a loop. Configuration comes from the environment (see sync_config.py).

Modes:
  default     loop forever, refreshing every SYNC_INTERVAL seconds
  --once      run one refresh and exit
  --force     run one full refetch (clears the watermark) and exit

Run:
  python sync_worker.py --once
"""
import argparse
import asyncio
import logging
from typing import List, Optional

from customer_service import CustomerService, create_service
from sync_config import SyncConfig
from sync_errors import ReceiptSyncError

log = logging.getLogger('sync_worker')


def log_progress(message: str, count: int) -> None:
    log.info('%s (%d)', message, count)


async def run_once(service: CustomerService, force: bool = False) -> int:
    if force:
        customers = await service.force_refresh(log_progress)
    else:
        customers = await service.get_customer_aggregates(log_progress)
    log.info('%d customers (%s pass)', len(customers),
             service.last_decision.value if service.last_decision else 'unknown')
    return len(customers)


async def run_loop(service: CustomerService, interval: float) -> None:
    while True:
        try:
            await run_once(service)
        except ReceiptSyncError as exc:
            log.warning('refresh failed: %s', exc)
        await asyncio.sleep(interval)


async def _main(args: argparse.Namespace, config: SyncConfig) -> None:
    async with create_service(config) as service:
        if args.once or args.force:
            await run_once(service, force=args.force)
        else:
            await run_loop(service, args.interval)


def parse_args(argv: Optional[List[str]] = None, config: Optional[SyncConfig] = None) -> argparse.Namespace:
    config = config or SyncConfig()
    ap = argparse.ArgumentParser(description='Customer receipts sync worker')
    ap.add_argument('--once', action='store_true', help='Run a single refresh and exit')
    ap.add_argument('--force', action='store_true', help='Refetch everything and exit')
    ap.add_argument('--interval', type=float, default=config.sync_interval, help='Seconds between refreshes')
    ap.add_argument('--db', default=config.cache_path, help='Path to the SQLite receipt cache')
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    config = SyncConfig.from_env()
    logging.basicConfig(level=config.log_level_value, format='[sync] %(asctime)s %(levelname)s %(message)s')
    args = parse_args(argv, config)
    config.cache_path = args.db
    log.info('starting worker, interval=%ss, db=%s', args.interval, config.cache_path)
    try:
        asyncio.run(_main(args, config))
    except KeyboardInterrupt:
        log.info('exiting on Ctrl+C')


if __name__ == '__main__':
    main()
