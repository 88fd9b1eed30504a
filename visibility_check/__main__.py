"""
Command-line entry point.

Usage:
    visibility-check --keyword "dating app" --domain tinder.com --country US
    visibility-check --keyword "dating app" --domain tinder.com --country US --json
    visibility-check --test-email --email you@example.com
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from visibility_check import config
from visibility_check.errors import PollTimeout, QueryValidationError
from visibility_check.models import RUN_FAILED
from visibility_check.notify import PROVIDER_LABELS, send_test_email
from visibility_check.service import VisibilityService, poll_until_complete

logger = logging.getLogger("visibility_check")


def setup_logging(level: str = config.LOG_LEVEL, log_file: str = config.LOG_FILE) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='a'))
    logging.basicConfig(level=level, format=config.LOG_FORMAT, handlers=handlers)


def print_progress(n, outcome, total):
    target_status = "✓" if outcome.mentioned else "✗"
    print(f"[{n}/{total}] {outcome.provider:18} | {outcome.status:7} | Target: {target_status}")


def print_summary(poll, snapshot):
    print("\n" + "=" * 60)
    print(f"📊 VISIBILITY SCORE: {snapshot.weighted_score_percent}%")
    print(f"   Mentioned by {snapshot.mention_count} of {snapshot.providers_total} providers ({poll.status})")
    print("=" * 60)
    for outcome in poll.outcomes:
        label = PROVIDER_LABELS.get(outcome.provider, outcome.provider)
        rank = snapshot.brand_rank.get(outcome.provider)
        rank_str = f"#{rank}" if rank is not None else "-"
        print(f"{label:20} | {outcome.status:7} | {'✓' if outcome.mentioned else '✗'} | rank {rank_str}")
        if outcome.evidence:
            print(f"{'':20}   {outcome.evidence}")
        competitors = snapshot.competitors_per_provider.get(outcome.provider) or []
        if competitors:
            print(f"{'':20}   before you: {', '.join(competitors[:8])}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Multi-provider brand visibility check')
    parser.add_argument('--keyword', help='Search keyword, e.g. "dating app"')
    parser.add_argument('--domain', help='Target domain, e.g. tinder.com')
    parser.add_argument('--country', help='ISO-2 country code, e.g. US')
    parser.add_argument('--language', default='en', help='Language tag (default: en)')
    parser.add_argument('--email', help='Send the summary to this address')
    parser.add_argument('--json', action='store_true', help='Print the final poll and report as JSON')
    parser.add_argument('--test-email', action='store_true', help='Send a test email to --email and exit')
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    if args.test_email:
        if not args.email:
            parser.error("--test-email requires --email")
        return 0 if send_test_email(args.email) else 1

    if not (args.keyword and args.domain and args.country):
        parser.error("--keyword, --domain and --country are required")

    service = VisibilityService.from_config()
    try:
        try:
            submitted = service.submit(args.keyword, args.domain, args.country, args.language, args.email)
        except QueryValidationError as e:
            for field_name, message in e.issues.items():
                print(f"❌ {field_name}: {message}", file=sys.stderr)
            return 2

        logger.info(f"🚀 Run {submitted.run_id} ({submitted.status}, cached={submitted.cached})")
        try:
            poll = poll_until_complete(
                service,
                submitted.run_id,
                on_progress=None if args.json else print_progress,
            )
        except PollTimeout as e:
            logger.error(f"❌ {e}")
            return 1
        if poll.status == RUN_FAILED:
            logger.error(f"❌ Run {submitted.run_id} failed after {poll.providers_done}/{poll.providers_expected} provider(s): {poll.error}")
            return 1

        snapshot = service.report(submitted.run_id)
        if args.json:
            print(json.dumps({
                "submit": submitted.to_dict(),
                "poll": poll.to_dict(),
                "report": snapshot.to_dict(),
            }, indent=2))
        else:
            print_summary(poll, snapshot)
    finally:
        service.shutdown(wait=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
