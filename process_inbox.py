#!/usr/bin/env python3
"""
Mail Sync Worker - Sync connected mailboxes and apply automation rules

Builds every component once and runs the background scheduler (global sync
every SYNC_INTERVAL_SECONDS, retention cleanup every CLEANUP_INTERVAL_HOURS).

Usage:
    # Run the scheduler until interrupted
    python3 process_inbox.py

    # One global sync pass (users not due yet are skipped)
    python3 process_inbox.py --once

    # Sync a single account now
    python3 process_inbox.py --account 6f1c0b7e-...

    # Apply retention (old processing logs, deleted-action emails)
    python3 process_inbox.py --cleanup

Options:
    --once              Run one global sync pass and exit
    --account ID        Sync one account and exit
    --cleanup           Run the retention job and exit
    --create-tables     Create database tables before starting
    --verbose           Debug logging
"""

import asyncio
import signal
import argparse
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

# Load environment variables FIRST (before settings are read)
load_dotenv()

from backend.core.config import get_settings
from backend.core.auth import CredentialVault, GoogleOAuthClient, MicrosoftOAuthClient, TokenLifecycle
from backend.core.ai import ClassifierFactory
from backend.core.database import init_db, create_tables
from backend.core.email import ContentNormalizer, RuleEngine
from backend.core.email.providers import GmailAdapter, OutlookAdapter, ProviderAdapters
from backend.core.email.sync_orchestrator import AccountLockRegistry, SyncOrchestrator
from backend.core.scheduler import SyncScheduler
from backend.core.storage import AttachmentStore

logger = logging.getLogger(__name__)


def configure_logging(settings, verbose: bool = False):
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=settings.log_format)

    # Suppress verbose HTTP logging from client libraries (only show warnings)
    for name in ("httpx", "httpcore", "openai", "googleapiclient", "msal"):
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class Worker:
    """Everything the process needs, constructed once."""
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler
    google: GoogleOAuthClient
    outlook: OutlookAdapter

    async def aclose(self):
        await self.google.http.aclose()
        await self.outlook.aclose()
        await self.orchestrator.classifiers.aclose()


def build_worker(settings, create_schema: bool = False) -> Worker:
    """Composition root: wire every component explicitly."""
    session_factory = init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    if create_schema:
        create_tables(session_factory.kw['bind'])

    vault = CredentialVault.from_settings(settings)
    google = GoogleOAuthClient(timeout=settings.http_timeout_seconds)
    microsoft = MicrosoftOAuthClient()
    tokens = TokenLifecycle(session_factory, vault, google, microsoft, settings)

    outlook = OutlookAdapter(vault, page_size=settings.email_batch_size, timeout=settings.http_timeout_seconds)
    adapters = ProviderAdapters(
        gmail=GmailAdapter(vault, page_size=settings.email_batch_size),
        outlook=outlook,
    )

    orchestrator = SyncOrchestrator(
        session_factory=session_factory,
        token_lifecycle=tokens,
        adapters=adapters,
        normalizer=ContentNormalizer(),
        classifiers=ClassifierFactory(settings, vault),
        rule_engine=RuleEngine(),
        attachment_store=AttachmentStore(settings.attachments_dir),
        settings=settings,
        locks=AccountLockRegistry(),
    )
    scheduler = SyncScheduler(session_factory, orchestrator, settings)
    return Worker(orchestrator=orchestrator, scheduler=scheduler, google=google, outlook=outlook)


def print_results(results):
    """Summary of one sync pass ({user_id: {account_id: SyncResult}})."""
    if not results:
        print("No users due for sync")
        return

    print(f"\n{'='*70}")
    print("SYNC SUMMARY")
    print(f"{'='*70}")
    for user_id, accounts in results.items():
        for account_id, result in accounts.items():
            if result.skipped:
                status = "skipped"
            elif result.ok:
                status = "ok"
            else:
                status = f"error: {result.error}"
            print(
                f"  {user_id[:20]:20} {account_id[:8]}  processed={result.processed:4d} "
                f"deleted={result.deleted:3d} drafted={result.drafted:3d} errors={result.errors:3d}  {status}"
            )
    print(f"{'='*70}\n")


async def run_forever(worker: Worker):
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    worker.scheduler.start()
    logger.info("Worker running (Ctrl+C to stop)")
    await stop_event.wait()

    logger.info("Shutting down...")
    await worker.scheduler.stop()


async def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Sync connected mailboxes and apply automation rules'
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true',
                      help='Run one global sync pass and exit')
    mode.add_argument('--account', type=str, default=None, metavar='ID',
                      help='Sync a single account and exit')
    mode.add_argument('--cleanup', action='store_true',
                      help='Run the retention job and exit')
    parser.add_argument('--create-tables', action='store_true',
                        help='Create database tables before starting')
    parser.add_argument('--verbose', action='store_true',
                        help='Debug logging')
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings, args.verbose)

    problems = settings.validate_runtime()
    if problems:
        for problem in problems:
            logger.error(f"Configuration error: {problem}")
        raise SystemExit(1)

    worker = build_worker(settings, create_schema=args.create_tables)
    try:
        if args.account:
            result = await worker.orchestrator.sync_account(args.account)
            print_results({"manual": {args.account: result}})
            if result.error and not result.skipped:
                raise SystemExit(1)
        elif args.once:
            print_results(await worker.scheduler.run_global_sync())
        elif args.cleanup:
            counts = await worker.scheduler.run_cleanup()
            print(f"✅ Cleanup removed {counts['logs_deleted']} logs and {counts['emails_deleted']} emails")
        else:
            await run_forever(worker)
    finally:
        await worker.aclose()


if __name__ == "__main__":
    asyncio.run(main())
