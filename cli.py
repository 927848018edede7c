from __future__ import annotations

import argparse
import json
import sys
import textwrap
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from campaign_store import build_campaign_store
from config import Settings, configure_logging
from errors import ServiceError
from graph_client import GraphClient
from performance import PerformanceSync


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cli.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Lead Launcher operator tool

            Examples:
              # 1) Issue an API key (the plaintext key is printed once)
              python cli.py create-key --user-id <USER_ID> --tier pro --name "Agent"

              # 2) Revoke a key
              python cli.py revoke-key --id <KEY_ID>

              # 3) Store a draft for a key from JSON
              python cli.py import-draft --key-id <KEY_ID> --file draft.json

              # 4) Refresh the metrics of one launched campaign
              python cli.py sync --id <META_CAMPAIGN_ID>
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("create-key", help="Create an API key.")
    sp.add_argument("--user-id", required=True)
    sp.add_argument("--tier", default="free", choices=["free", "pro", "enterprise"])
    sp.add_argument("--name", default="Default")
    sp.add_argument("--test", action="store_true", help="Create a test-mode key.")

    sp = sub.add_parser("revoke-key", help="Revoke an API key by id.")
    sp.add_argument("--id", required=True)

    sp = sub.add_parser("import-draft", help="Store a campaign draft owned by an API key.")
    sp.add_argument("--key-id", required=True)
    sp.add_argument("--file", required=True, help="Draft JSON (business_name, variants, targeting, ...).")

    sp = sub.add_parser("sync", help="Run one performance sync and store the snapshot.")
    sp.add_argument("--id", required=True, help="Meta campaign id")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    args = build_parser().parse_args(argv)

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    configure_logging(settings)
    store = build_campaign_store(settings)

    try:
        if args.cmd == "create-key":
            raw_key, record = store.create_api_key(
                user_id=args.user_id,
                name=args.name,
                tier=args.tier,
                is_live=not args.test,
            )
            print(
                json.dumps(
                    {
                        "id": record.id,
                        "key": raw_key,
                        "tier": record.tier,
                        "rate_limit_per_min": record.rate_limit_per_min,
                        "rate_limit_per_day": record.rate_limit_per_day,
                        "note": "Store this key now; it cannot be shown again.",
                    },
                    indent=2,
                )
            )
            return 0

        if args.cmd == "revoke-key":
            if not store.revoke_api_key(args.id):
                print(f"No active key with id {args.id}", file=sys.stderr)
                return 1
            print(json.dumps({"id": args.id, "revoked": True}, indent=2))
            return 0

        if args.cmd == "import-draft":
            data = json.loads(Path(args.file).read_text(encoding="utf-8"))
            draft = store.create_draft(
                owner_key_id=args.key_id,
                user_id=data.get("user_id"),
                business_name=data.get("business_name"),
                business_type=data.get("business_type"),
                url=data.get("url"),
                strategy=data.get("strategy"),
                targeting=data.get("targeting"),
                variants=data.get("variants"),
                daily_budget_cents=data.get("daily_budget_cents"),
                meta_access_token=data.get("meta_access_token"),
                meta_pixel_id=data.get("meta_pixel_id"),
                draft_id=data.get("id"),
            )
            print(json.dumps({"id": draft.id, "status": draft.status}, indent=2))
            return 0

        if args.cmd == "sync":
            resolved = store.find_live_campaign(args.id)
            if resolved is None:
                print(f"No launched campaign with meta_campaign_id {args.id}", file=sys.stderr)
                return 1
            sync = PerformanceSync(settings, store, GraphClient(settings))
            report = sync.sync_resolved(resolved, campaign_id=args.id)
            sync.save_snapshot(report)
            print(json.dumps(report.to_dict(), indent=2))
            return 0

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except ServiceError as e:
        print(f"\n[{e.code}]", e.message, file=sys.stderr)
        if e.extra:
            print(json.dumps(e.extra, indent=2, default=str), file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
