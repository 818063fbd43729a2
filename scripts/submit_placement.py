"""Entry point that submits emails as placements and forwards copies for ingestion."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import sys

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from placement_bridge.config import Settings
from placement_bridge.eml_item import EmlFileBuilder, EmlFileItem
from placement_bridge.services import Services, build_services

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Submit emails as placements.")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit an .eml file as a placement")
    submit.add_argument("eml", type=Path, help="Path to the RFC 822 file")
    submit.add_argument("--product-code", required=True)
    submit.add_argument("--item-id", help="Mailbox identifier of the message (EWS or REST)")
    submit.add_argument("--conversation-id", help="Conversation id used when no item id is known")
    submit.add_argument("--forward", action="store_true", help="Forward a copy to the shared mailbox")
    submit.add_argument("--force", action="store_true", help="Submit even if already stamped")

    retry = sub.add_parser("retry", help="Retry failed forwards")
    retry.add_argument("--placement-id", help="Only retry this placement")

    sub.add_parser("pending", help="List forwards awaiting a retry")
    sub.add_parser("logout", help="Forget cached tokens and signed-in accounts")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def run_submit(services: Services, args: argparse.Namespace) -> int:
    item = EmlFileItem(args.eml, item_id=args.item_id, conversation_id=args.conversation_id)
    orchestrator = services.orchestrator
    if not args.force and await orchestrator.is_already_submitted(item):
        logging.warning("%s was already submitted; use --force to submit again", args.eml)
        return 1

    result = await orchestrator.submit(None, item, args.product_code, args.forward)
    if not result.success:
        logging.error("Placement failed: %s", result.error)
        return 1
    logging.info("Placement %s created", result.placement_id)
    if result.forwarding_failed:
        logging.warning(
            "Forwarding failed (%s); run 'retry --placement-id %s' later",
            result.forwarding_failed_reason,
            result.last_placement_id,
        )
        return 2
    return 0


async def run_retry(services: Services, args: argparse.Namespace) -> int:
    pending = services.store.pending()
    if args.placement_id:
        pending = [entry for entry in pending if entry.placement_id == args.placement_id]
    if not pending:
        logging.info("Nothing to retry")
        return 0

    failures = skipped = 0
    for entry in pending:
        if entry.needs_host_item:
            skipped += 1
            logging.warning(
                "Skipping %s: no item id was stored, retry it from the open message", entry.placement_id
            )
            continue
        result = await services.orchestrator.retry_forward(
            None, entry.placement_id, entry.graph_item_id, entry.shared_mailbox
        )
        if result.forwarding_failed:
            failures += 1
            logging.warning(
                "Retry for %s failed: %s", entry.placement_id, result.forwarding_failed_reason
            )
    logging.info(
        "Retry complete: retried=%s failed=%s skipped=%s", len(pending) - skipped, failures, skipped
    )
    return 2 if failures or skipped else 0


def run_pending(services: Services) -> int:
    for entry in services.store.pending():
        print(f"{entry.placement_id}\t{entry.graph_item_id or '-'}\t{entry.shared_mailbox}\t{entry.reason}")
    return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    services = build_services(settings, EmlFileBuilder())

    if args.command == "submit":
        code = asyncio.run(run_submit(services, args))
    elif args.command == "retry":
        code = asyncio.run(run_retry(services, args))
    elif args.command == "pending":
        code = run_pending(services)
    else:
        services.broker.logout()
        logging.info("Signed out")
        code = 0
    raise SystemExit(code)


if __name__ == "__main__":
    main()
