#!/usr/bin/env python3
"""
Outreach Sequencer
==================

Usage:
    python main.py run
    python main.py init-db
    python main.py templates
    python main.py publish <template_id> [--sequence-id ID]
    python main.py connect <tenant> <platform> <account_ref> [--warmed-up]
    python main.py enroll <tenant> <campaign> <sequence_id> <contact_id>...
    python main.py cancel-campaign <tenant> <campaign>
    python main.py cancel-contact <tenant> <contact>
    python main.py stats <tenant> <campaign>
    python main.py budget <tenant> <platform> [--kind message]
    python main.py plan <platform> <contacts> <days>
    python main.py signal <platform> <account_ref> <recipient_ref> <signal>
"""

import argparse
import asyncio
import sys
from datetime import datetime

import config
from utils.logging_utils import get_logger, setup_logging

logger = get_logger("sequencer.main")


def preflight() -> bool:
    """Checks before the scheduler starts (config, MongoDB, gateways)."""
    print("=" * 60)
    print("  Outreach Sequencer")
    print("=" * 60)
    print()

    if not config.DATABASE_URL:
        print("❌ DATABASE_URL not set.")
        return False

    try:
        from database import get_db
        get_db().command("ping")
        print("✅ MongoDB connected")
    except Exception as e:
        print(f"❌ MongoDB unreachable: {e}")
        return False

    if config.GATEWAY_API_KEY:
        print(f"✅ Messaging gateway: {config.GATEWAY_BASE_URL}")
    else:
        print("⚠️  GATEWAY_API_KEY not set (LinkedIn/WhatsApp/Messenger/Telegram sends will fail)")

    if config.SMTP_ACCOUNTS:
        print(f"✅ {len(config.SMTP_ACCOUNTS)} SMTP accounts loaded ({config.SMTP_HOST}:{config.SMTP_PORT})")
    else:
        print("⚠️  No SMTP accounts configured (email steps will fail)")

    print(f"✅ Tick: {config.TICK_INTERVAL_SECONDS}s, batch {config.CLAIM_BATCH_SIZE}, "
          f"concurrency {config.MAX_CONCURRENT_DISPATCHES}")
    print(f"✅ Alerts: {config.ALERT_CHANNEL if config.ALERT_WEBHOOK_URL else 'disabled'}")
    print()
    return True


def run_scheduler():
    if not preflight():
        sys.exit(1)
    from sequencer.scheduler import main as scheduler_main
    asyncio.run(scheduler_main())


def init_db():
    from database import ensure_indexes, get_db
    ensure_indexes(get_db())
    print("✅ Indexes created")


def list_templates():
    from sequencer.sequence_templates import list_templates as templates
    print("\n📋 Sequence templates\n")
    for t in templates():
        print(f"• {t['id']}: {t['name']} ({', '.join(t['platforms'])}, {t['steps']} steps)")


def publish_template(template_id: str, sequence_id: str = None):
    from sequencer.execution_store import SequenceStore
    from sequencer.rate_limits import validate_channel_mix
    from sequencer.sequence_templates import get_template

    definition = get_template(template_id, sequence_id)
    mix = validate_channel_mix(list(definition.platforms))
    for warning in mix["warnings"]:
        print(f"⚠️  {warning}")
    published = SequenceStore().publish(definition)
    print(f"✅ Published {published.id}@v{published.version}")


def connect_account(tenant_id: str, platform: str, account_ref: str, warmed_up: bool):
    from database import TenantAccounts
    from sequencer.rate_limits import SUPPORTED_PLATFORMS

    if platform not in SUPPORTED_PLATFORMS:
        print(f"❌ Unknown platform {platform}. Supported: {', '.join(SUPPORTED_PLATFORMS)}")
        return
    TenantAccounts().connect(tenant_id, platform, account_ref, warmed_up=warmed_up)
    print(f"✅ {tenant_id}: {platform} account {account_ref} connected")


def enroll_contacts(tenant_id: str, campaign_id: str, sequence_id: str, contact_ids, version: int = None):
    from sequencer.scheduler import build_scheduler

    scheduler = build_scheduler()
    sequences = scheduler.dispatcher.sequences
    definition = sequences.get(sequence_id, version) if version else sequences.latest(sequence_id)
    if definition is None:
        print(f"❌ Sequence {sequence_id} not published")
        return
    result = scheduler.enroll_many(tenant_id, campaign_id, list(contact_ids), definition)
    print(f"✅ Enrolled {result['enrolled']} contacts in {campaign_id} ({definition.id}@v{definition.version})")
    if result["skipped"]:
        print(f"⚠️  {result['skipped']} contacts skipped (tenant limit reached)")


def cancel_campaign(tenant_id: str, campaign_id: str):
    from database import CampaignStats
    from sequencer.execution_store import ExecutionStore
    count = ExecutionStore(stats=CampaignStats()).cancel_campaign(tenant_id, campaign_id)
    print(f"✅ Cancelled {count} executions")


def cancel_contact(tenant_id: str, contact_id: str):
    from database import CampaignStats
    from sequencer.execution_store import ExecutionStore
    count = ExecutionStore(stats=CampaignStats()).cancel_contact(tenant_id, contact_id)
    print(f"✅ Cancelled {count} executions for {contact_id}")


def show_stats(tenant_id: str, campaign_id: str):
    from database import CampaignStats
    from sequencer.execution_store import ExecutionStore

    print(f"\n📊 Campaign {campaign_id} ({tenant_id})")
    print("\n   Executions:")
    for status, count in ExecutionStore().campaign_status_counts(tenant_id, campaign_id).items():
        print(f"   - {status.replace('_', ' ').title()}: {count}")
    print("\n   Activity:")
    for key, value in CampaignStats().get(tenant_id, campaign_id).items():
        print(f"   - {key.title()}: {value}")


def show_budget(tenant_id: str, platform: str, kind: str):
    from sequencer.errors import ConfigurationError
    from sequencer.rate_limits import compute_budget
    from sequencer.tenants import TenantDirectory

    now = datetime.utcnow()
    try:
        account = TenantDirectory().resolve_account(tenant_id, platform, now)
    except ConfigurationError as e:
        print(f"❌ {e}")
        return
    budget = compute_budget(account, platform, kind)
    print(f"\n📈 {tenant_id} / {platform} / {kind} (account age {account.account_age_days}d, "
          f"{account.violation_count} violations)")
    print(f"   Daily:  {budget.daily_limit - budget.daily_remaining}/{budget.daily_limit}")
    if budget.weekly_limit is not None:
        print(f"   Weekly: {budget.weekly_limit - budget.weekly_remaining}/{budget.weekly_limit}")
    if budget.cooldown_until and budget.cooldown_until > now:
        print(f"   Cooling down until {budget.cooldown_until:%H:%M:%S} UTC")


def mark_signal(platform: str, account_ref: str, recipient_ref: str, signal: str):
    """Record engagement seen outside the gateway (e.g. an email reply) so branches can react."""
    from database import DeliveryLog

    try:
        DeliveryLog().mark_signal(platform, account_ref, recipient_ref, signal)
    except ValueError as e:
        print(f"❌ {e}")
        return
    logger.info("signal_marked", extra={"platform": platform, "recipient": recipient_ref, "signal": signal})
    print(f"✅ {recipient_ref}: {signal}")


def show_plan(platform: str, contacts: int, days: int):
    from sequencer.rate_limits import recommended_schedule

    plan = recommended_schedule(platform, contacts, days)
    print(f"\n🗓  {platform}: {plan['contacts_per_day']} contacts/day, "
          f"~{plan['estimated_completion_days']} days to finish")
    for slot in plan["schedule"]:
        print(f"   {slot['hour']:02d}:00  {slot['count']}")
    if plan["warning"]:
        print(f"⚠️  {plan['warning']}")


def main():
    setup_logging(config.LOG_LEVEL, config.LOG_FILE or None, structured=config.LOG_JSON)

    parser = argparse.ArgumentParser(
        description="Multi-tenant outreach sequence engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py publish linkedin-outreach --sequence-id acme-linkedin
  python main.py connect acme linkedin acc_123
  python main.py enroll acme q3-founders acme-linkedin contact_1 contact_2
  python main.py run
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Run the scheduler until SIGTERM/SIGINT")
    subparsers.add_parser("init-db", help="Create MongoDB indexes")
    subparsers.add_parser("templates", help="List pre-built sequences")

    publish_parser = subparsers.add_parser("publish", help="Publish a template as a new sequence version")
    publish_parser.add_argument("template_id")
    publish_parser.add_argument("--sequence-id", help="Publish under this sequence id")

    connect_parser = subparsers.add_parser("connect", help="Connect a tenant account")
    connect_parser.add_argument("tenant_id")
    connect_parser.add_argument("platform")
    connect_parser.add_argument("account_ref")
    connect_parser.add_argument("--warmed-up", action="store_true", help="Account already warmed up")

    enroll_parser = subparsers.add_parser("enroll", help="Enroll contacts in a campaign")
    enroll_parser.add_argument("tenant_id")
    enroll_parser.add_argument("campaign_id")
    enroll_parser.add_argument("sequence_id")
    enroll_parser.add_argument("contact_ids", nargs="+")
    enroll_parser.add_argument("--version", type=int, help="Sequence version (default: latest)")

    cancel_campaign_parser = subparsers.add_parser("cancel-campaign", help="Cancel every execution of a campaign")
    cancel_campaign_parser.add_argument("tenant_id")
    cancel_campaign_parser.add_argument("campaign_id")

    cancel_contact_parser = subparsers.add_parser("cancel-contact", help="Stop all sequences for a contact")
    cancel_contact_parser.add_argument("tenant_id")
    cancel_contact_parser.add_argument("contact_id")

    stats_parser = subparsers.add_parser("stats", help="Campaign execution stats")
    stats_parser.add_argument("tenant_id")
    stats_parser.add_argument("campaign_id")

    budget_parser = subparsers.add_parser("budget", help="Remaining send budget for a tenant account")
    budget_parser.add_argument("tenant_id")
    budget_parser.add_argument("platform")
    budget_parser.add_argument("--kind", default="message", help="Action kind")

    signal_parser = subparsers.add_parser("signal", help="Mark a contact as replied/opened/clicked/accepted")
    signal_parser.add_argument("platform")
    signal_parser.add_argument("account_ref")
    signal_parser.add_argument("recipient_ref")
    signal_parser.add_argument("signal", choices=["accepted", "replied", "opened", "clicked"])

    plan_parser = subparsers.add_parser("plan", help="Recommended pacing for a campaign")
    plan_parser.add_argument("platform")
    plan_parser.add_argument("contacts", type=int)
    plan_parser.add_argument("days", type=int)

    args = parser.parse_args()

    if args.command == "run":
        run_scheduler()
    elif args.command == "init-db":
        init_db()
    elif args.command == "templates":
        list_templates()
    elif args.command == "publish":
        publish_template(args.template_id, args.sequence_id)
    elif args.command == "connect":
        connect_account(args.tenant_id, args.platform, args.account_ref, args.warmed_up)
    elif args.command == "enroll":
        enroll_contacts(args.tenant_id, args.campaign_id, args.sequence_id, args.contact_ids, args.version)
    elif args.command == "cancel-campaign":
        cancel_campaign(args.tenant_id, args.campaign_id)
    elif args.command == "cancel-contact":
        cancel_contact(args.tenant_id, args.contact_id)
    elif args.command == "stats":
        show_stats(args.tenant_id, args.campaign_id)
    elif args.command == "budget":
        show_budget(args.tenant_id, args.platform, args.kind)
    elif args.command == "signal":
        mark_signal(args.platform, args.account_ref, args.recipient_ref, args.signal)
    elif args.command == "plan":
        show_plan(args.platform, args.contacts, args.days)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
