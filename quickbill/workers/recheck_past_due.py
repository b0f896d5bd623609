"""Past-due recheck worker. Run from cron: python -m quickbill.workers.recheck_past_due"""
import argparse
import json
import logging

from quickbill.core.config import settings
from quickbill.core.logging import configure_logging
from quickbill.features.billing.recheck_job import run_recheck_job

logger = logging.getLogger("quickbill.workers.recheck")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Re-corroborate past-due subscriptions with the payment provider")
    parser.add_argument("--limit", type=int, default=100, help="Maximum profiles to recheck in one run")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = run_recheck_job(limit=args.limit)
    logger.info("[recheck] done", extra=result)
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
