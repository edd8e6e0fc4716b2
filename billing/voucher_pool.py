"""
Voucher pool management: batch generation, router provisioning,
re-sync of existing vouchers and cancellation.

A provisioning failure is recorded on the single voucher it concerns and
never aborts the rest of the batch.
"""

import logging
import secrets
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .encoding import minutes_to_duration
from .exceptions import ConnectivityError, ObjectIdMissing, RouterError
from .models import Package, Voucher
from .nextsms import raise_operator_alert
from .router_gateway import RouterGateway

logger = logging.getLogger(__name__)


class VoucherPoolError(ValueError):
    """Request cannot be honoured (bad quantity, wrong voucher state, ...)"""


# -----------------------------------------------------------------------------
# Code generation
# -----------------------------------------------------------------------------


def generate_unique_codes(router, quantity):
    """Codes unique within the batch and among the router's existing vouchers"""
    codes = set()
    while len(codes) < quantity:
        while len(codes) < quantity:
            codes.add(Voucher.generate_code(taken=codes))
        clashes = set(
            Voucher.objects.filter(router=router, code__in=codes).values_list(
                "code", flat=True
            )
        )
        codes -= clashes
    return list(codes)


def generate_unique_references(quantity):
    references = set()
    while len(references) < quantity:
        while len(references) < quantity:
            references.add(Voucher.generate_payment_reference())
        clashes = set(
            Voucher.objects.filter(payment_reference__in=references).values_list(
                "payment_reference", flat=True
            )
        )
        references -= clashes
    return list(references)


def new_batch_id():
    return f"BATCH-{timezone.now():%Y%m%d%H%M%S}-{secrets.token_hex(2).upper()}"


# -----------------------------------------------------------------------------
# Router provisioning
# -----------------------------------------------------------------------------


def provision_voucher_user(gateway, code, package_name, service_type, duration_minutes, comment=""):
    """
    Create the router-side account for one voucher.

    Returns (router_user_id, error_message); exactly one of them is set.
    """
    try:
        router_user_id = gateway.create_user(
            name=code,
            password=code,
            profile=package_name,
            service_type=service_type,
            limit_uptime=minutes_to_duration(duration_minutes) if duration_minutes else None,
            comment=comment,
        )
        return router_user_id, ""
    except ObjectIdMissing as e:
        # User exists on the router; a later bulk re-sync backfills the id
        logger.warning(f"Voucher {code} created without a router id: {e}")
        return None, "Created on router but no object id was returned"
    except RouterError as e:
        logger.warning(f"Failed to provision voucher {code}: {e}")
        return None, f"{e.error_type}: {e}"


def _provision_batch(gateway, package, codes, comment):
    def provision(code):
        return provision_voucher_user(
            gateway,
            code,
            package.name,
            package.service_type,
            package.duration_minutes,
            comment,
        )

    workers = max(1, int(settings.VOUCHER_SYNC_WORKERS or 1))
    if workers == 1 or len(codes) == 1:
        return [provision(code) for code in codes]

    # Threads only talk HTTP; all database work stays on this thread
    with ThreadPoolExecutor(max_workers=min(workers, len(codes))) as pool:
        return list(pool.map(provision, codes))


# -----------------------------------------------------------------------------
# Batch generation
# -----------------------------------------------------------------------------


def generate_vouchers(
    router,
    package_name,
    quantity,
    service_type="hotspot",
    auto_expire=True,
    expiry_days=None,
    usage_timed_on_purchase=None,
    sync_to_router=True,
    generated_by="",
    gateway=None,
):
    """
    Generate a batch of vouchers for one package on one router.

    When sync_to_router is set and the router is known reachable each
    voucher is provisioned as a router user (name and password = code).
    Vouchers are persisted either way, with status "active".

    Returns {"success", "batch_id", "vouchers", "synced_count",
    "failed_count", "details"}.
    """
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise VoucherPoolError("Quantity must be a whole number")
    if not 1 <= quantity <= settings.VOUCHER_MAX_BATCH:
        raise VoucherPoolError(
            f"Quantity must be between 1 and {settings.VOUCHER_MAX_BATCH}"
        )

    try:
        package = Package.objects.get(
            router=router, service_type=service_type, name=package_name
        )
    except Package.DoesNotExist:
        raise VoucherPoolError(
            f"Package {package_name} not found for {service_type} on {router.name}"
        )

    if expiry_days is None:
        expiry_days = settings.VOUCHER_DEFAULT_EXPIRY_DAYS
    timed_on_purchase = (
        package.timed_on_purchase
        if usage_timed_on_purchase is None
        else bool(usage_timed_on_purchase)
    )

    now = timezone.now()
    batch_id = new_batch_id()
    codes = generate_unique_codes(router, quantity)
    references = generate_unique_references(quantity)

    provisioned = [(None, "")] * quantity
    synced_count = failed_count = 0
    should_sync = sync_to_router and router.is_reachable

    if should_sync:
        gateway = gateway or RouterGateway.for_router(router)
        provisioned = _provision_batch(
            gateway, package, codes, comment=f"{package.name} | {batch_id}"
        )
    elif sync_to_router:
        provisioned = [(None, f"Router {router.status}; not provisioned")] * quantity
        logger.info(
            f"Router {router.name} is {router.status}, batch {batch_id} saved without provisioning"
        )

    vouchers = []
    for code, reference, (router_user_id, error) in zip(codes, references, provisioned):
        if should_sync:
            if router_user_id:
                synced_count += 1
            else:
                failed_count += 1
        vouchers.append(
            Voucher(
                tenant=router.tenant,
                router=router,
                package=package,
                code=code,
                payment_reference=reference,
                status="active",
                package_name=package.name,
                service_type=package.service_type,
                price=package.price,
                duration_minutes=package.duration_minutes,
                upload_kbps=package.upload_kbps,
                download_kbps=package.download_kbps,
                data_limit_mb=package.data_limit_mb,
                timed_on_purchase=timed_on_purchase,
                router_user_id=router_user_id,
                router_sync_error=error,
                synced_at=now if router_user_id else None,
                batch_id=batch_id,
                batch_size=quantity,
                generated_by=generated_by,
                activation_expires_at=(
                    now + timedelta(days=int(expiry_days)) if auto_expire else None
                ),
                auto_delete=bool(auto_expire),
            )
        )

    with transaction.atomic():
        Voucher.objects.bulk_create(vouchers)

    if failed_count:
        raise_operator_alert(
            router.tenant,
            "provisioning_failure",
            f"{failed_count} of {quantity} vouchers in {batch_id} "
            f"were not provisioned on {router.name}",
            router=router,
            batch_id=batch_id,
            package=package.name,
        )

    if should_sync:
        if synced_count:
            router.record_contact()
        logger.info(
            f"Batch {batch_id}: {synced_count} of {quantity} vouchers synced to {router.name}"
        )

    saved = list(Voucher.objects.filter(batch_id=batch_id).order_by("id"))
    details = [
        {
            "code": voucher.code,
            "payment_reference": voucher.payment_reference,
            "synced": bool(voucher.router_user_id),
            "router_user_id": voucher.router_user_id,
            "error": voucher.router_sync_error,
        }
        for voucher in saved
    ]

    return {
        "success": True,
        "batch_id": batch_id,
        "package": package.name,
        "total": quantity,
        "vouchers": saved,
        "synced_count": synced_count,
        "failed_count": failed_count,
        "sync_requested": bool(sync_to_router),
        "details": details,
    }


# -----------------------------------------------------------------------------
# Re-sync and cancellation
# -----------------------------------------------------------------------------


def resync_vouchers(router, gateway=None):
    """
    Bring the router in line with the unsold pool.

    Lists router users once per service type, backfills router ids for
    vouchers already present and provisions the missing ones.
    """
    gateway = gateway or RouterGateway.for_router(router)
    pending = list(
        Voucher.objects.filter(router=router, status="active", is_used=False)
    )

    results = {
        "total": len(pending),
        "synced": 0,
        "failed": 0,
        "already_exists": 0,
        "updated": 0,
    }
    if not pending:
        return {"success": True, "message": "No vouchers to sync", "results": results}

    existing = {}
    try:
        for service_type in {voucher.service_type for voucher in pending}:
            existing[service_type] = {
                user.get("name"): user.get(".id") or user.get("id")
                for user in gateway.list_users(service_type)
            }
    except RouterError as e:
        router.record_failure(e)
        raise ConnectivityError(e) from e

    router.record_contact()
    now = timezone.now()

    for voucher in pending:
        router_id = existing[voucher.service_type].get(voucher.code)
        if router_id:
            results["already_exists"] += 1
            if voucher.router_user_id != router_id:
                voucher.router_user_id = router_id
                voucher.router_sync_error = ""
                voucher.synced_at = now
                voucher.save(
                    update_fields=["router_user_id", "router_sync_error", "synced_at", "updated_at"]
                )
                results["updated"] += 1
            continue

        router_user_id, error = provision_voucher_user(
            gateway,
            voucher.code,
            voucher.package_name,
            voucher.service_type,
            voucher.duration_minutes,
            comment=f"{voucher.package_name} | {voucher.batch_id}",
        )
        voucher.router_user_id = router_user_id
        voucher.router_sync_error = error
        voucher.synced_at = now if router_user_id else None
        voucher.save(
            update_fields=["router_user_id", "router_sync_error", "synced_at", "updated_at"]
        )
        if router_user_id:
            results["synced"] += 1
        else:
            results["failed"] += 1

    logger.info(f"Voucher re-sync for {router.name}: {results}")
    return {
        "success": True,
        "message": f"Synced {results['synced']} vouchers, {results['failed']} failed",
        "results": results,
    }


def cancel_voucher(voucher, gateway=None):
    """
    Withdraw an unsold voucher from the pool and remove its router user
    (best effort; the router may be offline).
    """
    if voucher.status == "cancelled":
        raise VoucherPoolError("Voucher is already cancelled")
    if voucher.is_used or voucher.status != "active":
        raise VoucherPoolError(f"Cannot cancel a {voucher.status} voucher")

    # Only an unsold voucher may be cancelled, even if a claim raced us
    cancelled = Voucher.objects.filter(pk=voucher.pk, status="active").update(
        status="cancelled", updated_at=timezone.now()
    )
    voucher.refresh_from_db()
    if not cancelled:
        raise VoucherPoolError(f"Cannot cancel a {voucher.status} voucher")

    router_deleted = False
    router = voucher.router
    if voucher.router_user_id and router.is_reachable:
        gateway = gateway or RouterGateway.for_router(router)
        try:
            gateway.delete_user(voucher.router_user_id, voucher.service_type)
            router_deleted = True
        except RouterError as e:
            logger.warning(f"Could not remove router user for voucher {voucher.code}: {e}")

    logger.info(f"Voucher {voucher.code} cancelled (router user removed: {router_deleted})")
    return {"success": True, "voucher": voucher, "router_deleted": router_deleted}
