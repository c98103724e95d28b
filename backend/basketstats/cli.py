"""
Operator command line.

Usage:
  basketstats-admin init-plans
  basketstats-admin reconcile [--dry-run] [--check]
  basketstats-admin sweep
  basketstats-admin suspend SUBSCRIPTION_ID --reason "chargeback"
  basketstats-admin restore SUBSCRIPTION_ID
  basketstats-admin cancel SUBSCRIPTION_ID [--reason ...]
  basketstats-admin force-activate USER_ID PREMIUM
  basketstats-admin show USER_ID

Every command goes through the same services as the HTTP admin surface, so
transitions are guarded and audited the same way. Notifications are sent
inline since there is no response to defer them behind.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from basketstats.core.config import settings
from basketstats.core.exceptions import AppException
from basketstats.core.logging import configure_logging
from basketstats.db.session import engine, get_session_factory
from basketstats.middleware.request_context import (
    RequestContext,
    bind_request_context,
    reset_request_context,
)
from basketstats.models.plan import PlanType
from basketstats.models.subscription import Subscription
from basketstats.services.entitlement_service import EntitlementService
from basketstats.services.expiration_sweep import ExpirationSweepService
from basketstats.services.notification_service import SubscriptionNotifier
from basketstats.services.reconciliation_service import ReconciliationService
from basketstats.services.subscription_admin_service import (
    AdminCommandResult,
    SubscriptionAdminService,
)

logger = logging.getLogger(__name__)

CLI_ACTOR = "cli"


def _subscription_summary(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan": subscription.plan.type.value,
        "status": subscription.status.value,
        "start_date": subscription.start_date.isoformat(),
        "end_date": subscription.end_date.isoformat() if subscription.end_date else None,
        "transaction_id": subscription.transaction_id,
    }


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _after_command(result: AdminCommandResult) -> None:
    if result.notification is not None:
        await SubscriptionNotifier().send_safe(result.notification)
    _print(_subscription_summary(result.subscription))


async def run_command(args: argparse.Namespace, session_factory: async_sessionmaker) -> int:
    """
    Execute one parsed command.

    Returns:
        Process exit code
    """
    actor = args.actor or CLI_ACTOR
    admin = SubscriptionAdminService(session_factory)

    if args.command == "init-plans":
        plans = await admin.initialize_plans(actor=actor)
        _print([{"type": p.type.value, "name": p.name, "price": p.price} for p in plans])
        return 0

    if args.command == "reconcile":
        service = ReconciliationService(session_factory)
        if args.check:
            await service.assert_invariants()
            print("No user holds more than one active subscription")
            return 0
        report = await service.reconcile(dry_run=args.dry_run, actor=actor)
        _print(report.to_dict())
        return 0

    if args.command == "sweep":
        _print(await ExpirationSweepService(session_factory).run_sweep())
        return 0

    if args.command == "suspend":
        await _after_command(await admin.suspend(args.subscription_id, args.reason, actor=actor))
        return 0

    if args.command == "restore":
        await _after_command(await admin.restore(args.subscription_id, actor=actor))
        return 0

    if args.command == "cancel":
        await _after_command(
            await admin.cancel(args.subscription_id, actor=actor, reason=args.reason)
        )
        return 0

    if args.command == "force-activate":
        plan_type = PlanType(args.plan_type)
        await _after_command(await admin.force_activate(args.user_id, plan_type, actor=actor))
        return 0

    if args.command == "show":
        async with session_factory() as session:
            service = EntitlementService(session)
            active = await service.get_current_subscription(args.user_id)
            history = await service.list_subscription_history(args.user_id)
            await session.commit()
        _print(
            {
                "user_id": args.user_id,
                "active": _subscription_summary(active) if active else None,
                "history": [_subscription_summary(item) for item in history],
            }
        )
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="basketstats-admin",
        description="BasketStats subscription maintenance",
    )
    parser.add_argument("--actor", help="Operator name recorded in the audit log")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-plans", help="Seed the default plans")

    reconcile = sub.add_parser("reconcile", help="Repair duplicate active subscriptions")
    reconcile.add_argument("--dry-run", action="store_true", help="Report without writing")
    reconcile.add_argument(
        "--check", action="store_true", help="Fail if any violation exists, change nothing"
    )

    sub.add_parser("sweep", help="Expire overdue subscriptions and abandoned checkouts")

    suspend = sub.add_parser("suspend", help="Suspend an active subscription")
    suspend.add_argument("subscription_id")
    suspend.add_argument("--reason", required=True)

    restore = sub.add_parser("restore", help="Restore a suspended subscription")
    restore.add_argument("subscription_id")

    cancel = sub.add_parser("cancel", help="Cancel a subscription")
    cancel.add_argument("subscription_id")
    cancel.add_argument("--reason")

    force = sub.add_parser("force-activate", help="Grant a plan without payment")
    force.add_argument("user_id")
    force.add_argument(
        "plan_type",
        type=str.upper,
        choices=[p.value for p in PlanType],
    )

    show = sub.add_parser("show", help="Show a user's subscriptions")
    show.add_argument("user_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.LOG_LEVEL)

    async def _() -> int:
        token = bind_request_context(
            RequestContext(
                request_id=f"cli-{uuid.uuid4()}",
                ip_address="local",
                user_agent="basketstats-admin",
                path=args.command,
                method="CLI",
            )
        )
        try:
            return await run_command(args, get_session_factory())
        finally:
            reset_request_context(token)
            await engine.dispose()

    try:
        return asyncio.run(_())
    except AppException as e:
        logger.error(f"{e.__class__.__name__}: {e.message}")
        _print(e.to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
