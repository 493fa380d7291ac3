"""
Command-line interface for Vision Board.

Provides commands for:
- Creating the database schema
- Reclaiming goals stuck in generation
- Inspecting and granting credits
"""

import argparse
import sys

from visionboard.config import Settings
from visionboard.services import build_services


def cmd_init_db(args, services):
    """Create tables (the storage layer does this on open)."""
    print(f"Database ready at {services.settings.db_path}")


def cmd_reclaim_stuck(args, services):
    """Fail goals stuck in pending/generating and refund their credits."""
    reclaimed = services.goals.reclaim_stuck_goals(board_id=args.board)

    print("\n" + "=" * 60)
    print("STUCK GOAL RECLAIM")
    print("=" * 60)
    print(f"Reclaimed: {len(reclaimed)}")
    for goal in reclaimed:
        print(f"  {goal.id}  board={goal.board_id}  created={goal.created_at.isoformat()}")
    print("=" * 60)


def cmd_credits(args, services):
    """Show a profile's balance and quotas."""
    profile = services.storage.get_profile(args.profile_id)
    if profile is None:
        print(f"Profile not found: {args.profile_id}")
        sys.exit(1)

    limits = services.ledger.get_limits(profile)
    print("\n" + "=" * 60)
    print(f"CREDITS: {profile.id}")
    print("=" * 60)
    print(f"User ID: {profile.user_id or '-'}")
    print(f"Visitor ID: {profile.visitor_id or '-'}")
    print(f"Credits: {limits.credits}")
    print(f"Paid: {limits.is_paid}")
    print(f"Free images used: {profile.free_images_used}")
    print(f"Max boards: {limits.max_boards}")
    print(f"Max photos: {limits.max_photos}")
    print("=" * 60)


def cmd_grant(args, services):
    """Grant credits manually, keyed by an order id so it applies once."""
    if services.storage.get_profile(args.profile_id) is None:
        print(f"Profile not found: {args.profile_id}")
        sys.exit(1)

    grant = services.ledger.add_credits(args.profile_id, args.amount, args.order_id)
    if grant.already_processed:
        print(f"Order {args.order_id} was already applied. Balance: {grant.balance}")
    else:
        print(f"Granted {args.amount} credits. Balance: {grant.balance}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Vision Board: maintenance CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the database
  visionboard init-db --db visionboard.db

  # Refund goals stuck for more than three minutes
  visionboard reclaim-stuck

  # Inspect a profile
  visionboard credits profile_abc123

  # Grant credits for a support ticket
  visionboard grant profile_abc123 10 support-4711
""",
    )
    parser.add_argument("--db", help="Path to the SQLite database (default: VISIONBOARD_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("init-db", help="Create the database schema")

    reclaim_parser = subparsers.add_parser("reclaim-stuck", help="Fail and refund stuck goals")
    reclaim_parser.add_argument("--board", "-b", help="Only reclaim goals on this board")

    credits_parser = subparsers.add_parser("credits", help="Show a profile's credits")
    credits_parser.add_argument("profile_id", help="Profile ID")

    grant_parser = subparsers.add_parser("grant", help="Grant credits to a profile")
    grant_parser.add_argument("profile_id", help="Profile ID")
    grant_parser.add_argument("amount", type=int, help="Credits to add")
    grant_parser.add_argument("order_id", help="Idempotency key for this grant")

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands = {
        "init-db": cmd_init_db,
        "reclaim-stuck": cmd_reclaim_stuck,
        "credits": cmd_credits,
        "grant": cmd_grant,
    }

    settings = Settings.from_env()
    if args.db:
        settings.db_path = args.db

    services = build_services(settings)
    try:
        commands[args.command](args, services)
    finally:
        services.close()


if __name__ == "__main__":
    main()
