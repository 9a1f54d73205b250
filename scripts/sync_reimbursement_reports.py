import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from services.reimbursement_models import Scope
from services.report_ingest import sync_scope_reports
from services.spapi_reports import SpApiContext

DEFAULT_MARKETPLACE = "ATVPDKIKX0DER"
LOGGER = logging.getLogger("sync_reimbursement_reports")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ingest finished FBA report documents for one seller scope and recompute its claims."
    )
    parser.add_argument("--user-id", required=True, help="Seller account id")
    parser.add_argument("--country", required=True, help="Marketplace country code (e.g. US)")
    parser.add_argument("--region", required=True, help="SP-API region (NA / EU / FE)")
    parser.add_argument(
        "--marketplace",
        type=str,
        default=DEFAULT_MARKETPLACE,
        help=f"Marketplace ID (default: {DEFAULT_MARKETPLACE})",
    )
    parser.add_argument(
        "--access-token",
        type=str,
        default=os.getenv("SPAPI_ACCESS_TOKEN"),
        help="LWA access token (default: $SPAPI_ACCESS_TOKEN)",
    )
    parser.add_argument("--ledger-document", help="Inventory ledger summary report document id")
    parser.add_argument("--fee-document", help="FBA estimated fees report document id")
    parser.add_argument("--products-document", help="Merchant listings report document id")
    parser.add_argument("--reimbursement-document", help="FBA reimbursements report document id")
    parser.add_argument(
        "--no-shipments",
        action="store_true",
        help="Skip listing closed inbound shipments.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress INFO logs; only warnings/errors.",
    )
    return parser.parse_args(argv)


def document_ids_from_args(args: argparse.Namespace) -> Dict[str, str]:
    documents = {
        "ledger": args.ledger_document,
        "fees": args.fee_document,
        "products": args.products_document,
        "reimbursements": args.reimbursement_document,
    }
    return {kind: doc_id for kind, doc_id in documents.items() if doc_id}


def run(args: argparse.Namespace) -> Dict[str, Any]:
    if not args.access_token:
        raise ValueError("An access token is required (--access-token or SPAPI_ACCESS_TOKEN)")
    scope = Scope(user_id=args.user_id, country=args.country, region=args.region)
    ctx = SpApiContext(access_token=args.access_token, marketplace_id=args.marketplace)
    documents = document_ids_from_args(args)
    LOGGER.info(
        "Starting reimbursement sync for %s (documents=%s, shipments=%s)",
        scope,
        sorted(documents),
        not args.no_shipments,
    )
    counts = sync_scope_reports(scope, ctx, document_ids=documents, include_shipments=not args.no_shipments)
    LOGGER.info("Sync complete.")
    print(json.dumps(counts, indent=2, sort_keys=True))
    return counts


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    try:
        run(args)
    except ValueError as exc:
        LOGGER.error("Invalid arguments: %s", exc)
        return 2
    except Exception as exc:
        LOGGER.error("Sync failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
