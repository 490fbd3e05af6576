#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the scheduled CaseMatch sweeps.")
    parser.add_argument("--trials", action="store_true", help="Expire exhausted free trials.")
    parser.add_argument("--offers", action="store_true", help="Decline specific offers left unanswered too long.")
    parser.add_argument("--db-path", type=str, default="", help="Case store path (defaults to CASES_DB_PATH).")
    parser.add_argument("--json", action="store_true", help="Print a machine-readable summary.")
    args = parser.parse_args()

    if args.db_path:
        os.environ["CASES_DB_PATH"] = args.db_path
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from casematch.services.database import CaseEngineError  # noqa: E402
    from casematch.services.engine import engine  # noqa: E402

    run_trials = args.trials or not args.offers
    run_offers = args.offers or not args.trials
    summary: Dict[str, Any] = {}
    try:
        if run_trials:
            summary["expired_provider_ids"] = engine.sweep_trials().expired_provider_ids
        if run_offers:
            summary["expired_case_ids"] = engine.expire_offers().expired_case_ids
    except CaseEngineError as exc:
        print(f"Sweep failed: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(summary, indent=2))
        return 0
    if run_trials:
        print(f"Trials expired: {len(summary['expired_provider_ids'])}")
        for provider_id in summary["expired_provider_ids"]:
            print(f"- {provider_id}")
    if run_offers:
        print(f"Offers expired: {len(summary['expired_case_ids'])}")
        for case_id in summary["expired_case_ids"]:
            print(f"- {case_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
