"""
Background tasks for the ISP billing console
Run from django-crontab (see CRONJOBS in settings) or the management commands
"""

import logging

from django.db.models import Q
from django.utils import timezone

from .exceptions import RouterError
from .models import Payment, Voucher
from .router_gateway import RouterGateway
from .settlement import fulfil_pending_payment

logger = logging.getLogger(__name__)


def _expire(voucher, reason, now, from_statuses):
    """Flip one voucher to expired unless something else changed it first"""
    return (
        Voucher.objects.filter(pk=voucher.pk, status__in=from_statuses).update(
            status="expired", expired_at=now, expired_by=reason, updated_at=now
        )
        == 1
    )


def _remove_router_user(voucher, gateways):
    """Best-effort removal of the router-side user; returns True if deleted"""
    router = voucher.router
    if not (voucher.auto_delete and voucher.router_user_id and router.is_reachable):
        return False

    gateway = gateways.get(router.pk)
    if gateway is None:
        gateway = gateways[router.pk] = RouterGateway.for_router(router)
    try:
        gateway.delete_user(voucher.router_user_id, voucher.service_type)
        return True
    except RouterError as e:
        logger.warning(
            f"Could not remove expired voucher {voucher.payment_reference} from {router.name}: {e}"
        )
        return False


def expire_vouchers(now=None):
    """
    Expire vouchers whose deadline has passed.

    Three independent deadlines are swept:
    1. activation_expires_at on unsold vouchers (never bought in time)
    2. purchase_expires_at on sold vouchers timed from the purchase moment
    3. usage_ends_at on vouchers already in use

    Expired router users are removed when auto_delete is set.
    """
    now = now or timezone.now()
    sweeps = (
        (
            "activation_deadline",
            ("active",),
            Q(status="active", activation_expires_at__isnull=False, activation_expires_at__lte=now),
        ),
        (
            "purchase_deadline",
            ("assigned", "paid", "used"),
            Q(
                status__in=("assigned", "paid", "used"),
                purchase_expires_at__isnull=False,
                purchase_expires_at__lte=now,
            ),
        ),
        (
            "usage_end",
            ("paid", "used"),
            Q(status__in=("paid", "used"), usage_ends_at__isnull=False, usage_ends_at__lte=now),
        ),
    )

    counts = {"activation_deadline": 0, "purchase_deadline": 0, "usage_end": 0}
    removed_from_router = 0
    gateways = {}

    try:
        for reason, from_statuses, condition in sweeps:
            for voucher in Voucher.objects.filter(condition).select_related("router"):
                if not _expire(voucher, reason, now, from_statuses):
                    continue
                counts[reason] += 1
                if _remove_router_user(voucher, gateways):
                    removed_from_router += 1

        total = sum(counts.values())
        if total:
            logger.info(
                f"⏰ Expired {total} vouchers "
                f"(activation: {counts['activation_deadline']}, "
                f"purchase: {counts['purchase_deadline']}, "
                f"usage: {counts['usage_end']}), "
                f"removed {removed_from_router} router users"
            )
        return {
            "success": True,
            "expired": total,
            "removed_from_router": removed_from_router,
            **counts,
        }

    except Exception as e:
        logger.error(f"Error in expire_vouchers task: {str(e)}")
        return {"success": False, "error": str(e)}


def fulfil_pending_payments():
    """
    Retry paid purchases that found the voucher pool empty.
    Operators usually top up the pool after the out-of-stock alert.
    """
    fulfilled = 0
    still_waiting = 0
    failed = 0

    pending = Payment.objects.filter(status="pending_voucher").order_by("paid_at", "created_at")
    for payment in pending:
        try:
            if fulfil_pending_payment(payment):
                fulfilled += 1
            else:
                still_waiting += 1
        except Exception as e:
            failed += 1
            logger.error(f"Error fulfilling payment {payment.order_reference}: {str(e)}")

    if fulfilled or failed:
        logger.info(
            f"📦 Pending payments: {fulfilled} fulfilled, {still_waiting} waiting, {failed} errors"
        )
    return {
        "success": failed == 0,
        "fulfilled": fulfilled,
        "still_waiting": still_waiting,
        "failed": failed,
    }
