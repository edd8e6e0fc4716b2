"""
Package catalog reconciliation against router-side profiles

sync_packages() reads every profile for a service type in one call, then
compares it with the catalog inside a single transaction. Nothing is
written when the router cannot be read.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .encoding import (
    display_name_from_profile_name,
    duration_to_minutes,
    format_rate_limit,
    minutes_to_duration,
    parse_rate_limit,
    price_from_profile_name,
)
from .exceptions import ConnectivityError, ProtocolError, RouterError, UnsupportedService
from .models import Package, Router
from .router_gateway import PROFILE_PATHS, RouterGateway

logger = logging.getLogger(__name__)

# Built-in profiles every RouterOS install carries
SKIPPED_PROFILE_NAMES = {"default", "default-encryption"}

SYNC_STATUSES = ("synced", "drifted", "new_on_router", "not_on_router", "failed")


def _profile_id(profile):
    return profile.get(".id") or profile.get("id")


def _snapshot(profile):
    """Router-side fields the catalog mirrors"""
    return {
        "session-timeout": profile.get("session-timeout", ""),
        "idle-timeout": profile.get("idle-timeout", ""),
        "rate-limit": profile.get("rate-limit", ""),
    }


def _decode_minutes(value):
    try:
        return duration_to_minutes(value)
    except ValueError:
        return None


def _decode_rate(value):
    try:
        return parse_rate_limit(value)
    except ValueError:
        return None


def drifted_fields(package, profile):
    """Names of the fields where catalog and router disagree"""
    drift = []
    if _decode_minutes(profile.get("session-timeout")) != package.duration_minutes:
        drift.append("session-timeout")
    if _decode_minutes(profile.get("idle-timeout")) != package.idle_timeout_minutes:
        drift.append("idle-timeout")
    if _decode_rate(profile.get("rate-limit")) != (
        package.upload_kbps,
        package.download_kbps,
    ):
        drift.append("rate-limit")
    return drift


def package_from_profile(router, service_type, profile, synced_at):
    """Unsaved catalog entry synthesized from a profile found on the router"""
    name = profile["name"]
    upload, download = _decode_rate(profile.get("rate-limit")) or (0, 0)
    return Package(
        router=router,
        service_type=service_type,
        name=name,
        display_name=display_name_from_profile_name(name),
        price=price_from_profile_name(name),
        duration_minutes=_decode_minutes(profile.get("session-timeout")) or 0,
        idle_timeout_minutes=_decode_minutes(profile.get("idle-timeout")) or 0,
        upload_kbps=upload,
        download_kbps=download,
        router_profile_id=_profile_id(profile),
        router_snapshot=_snapshot(profile),
        sync_status="new_on_router",
        last_synced=synced_at,
    )


def sync_packages(router, service_type="hotspot", gateway=None):
    """
    Reconcile the catalog of one router/service type with the device.

    Returns {"success", "service_type", "added", "updated", "removed",
    per-status counts, "packages"}. Raises ConnectivityError (without
    touching the catalog) when the router cannot be read.

    Re-running with no device changes yields added == updated == 0.
    """
    if service_type not in PROFILE_PATHS:
        raise UnsupportedService(f"Unknown service type: {service_type}")

    gateway = gateway or RouterGateway.for_router(router)

    try:
        profiles = gateway.list_profiles(service_type)
    except RouterError as e:
        logger.error(f"Package sync aborted for router {router.name}: {e}")
        router.record_failure(e)
        raise ConnectivityError(e) from e

    router.record_contact()

    router_profiles = {}
    for profile in profiles:
        name = profile.get("name")
        if not name or name in SKIPPED_PROFILE_NAMES:
            continue
        router_profiles[name] = profile

    now = timezone.now()
    added = updated = removed = 0
    counts = dict.fromkeys(SYNC_STATUSES, 0)

    with transaction.atomic():
        # One writer per router; other routers sync independently
        Router.objects.select_for_update().filter(pk=router.pk).first()

        catalog = {
            package.name: package
            for package in Package.objects.filter(
                router=router, service_type=service_type
            )
        }

        for name, profile in router_profiles.items():
            package = catalog.get(name)

            if package is None:
                package = package_from_profile(router, service_type, profile, now)
                package.save()
                catalog[name] = package
                added += 1
                counts["new_on_router"] += 1
                logger.info(f"New profile on router {router.name}: {name}")
                continue

            drift = drifted_fields(package, profile)
            if drift:
                new_status = "drifted"
                logger.info(f"Package {name} drifted on {router.name}: {', '.join(drift)}")
            elif package.sync_status == "new_on_router":
                # Stays router-originated until an operator pushes or edits it
                new_status = "new_on_router"
            else:
                new_status = "synced"

            snapshot = _snapshot(profile)
            object_id = _profile_id(profile)
            if (
                package.sync_status != new_status
                or package.router_profile_id != object_id
                or package.router_snapshot != snapshot
            ):
                updated += 1

            package.sync_status = new_status
            package.router_profile_id = object_id
            package.router_snapshot = snapshot
            package.last_synced = now
            package.save(
                update_fields=[
                    "sync_status",
                    "router_profile_id",
                    "router_snapshot",
                    "last_synced",
                    "updated_at",
                ]
            )
            counts[new_status] += 1

        for name, package in catalog.items():
            if name in router_profiles:
                continue
            if package.sync_status != "not_on_router":
                removed += 1
            package.sync_status = "not_on_router"
            package.router_profile_id = None
            package.last_synced = now
            package.save(
                update_fields=[
                    "sync_status",
                    "router_profile_id",
                    "last_synced",
                    "updated_at",
                ]
            )
            counts["not_on_router"] += 1

    logger.info(
        f"Package sync for {router.name} ({service_type}): "
        f"added={added} updated={updated} removed={removed}"
    )

    packages = list(
        Package.objects.filter(router=router, service_type=service_type).order_by(
            "price", "name"
        )
    )
    return {
        "success": True,
        "service_type": service_type,
        "added": added,
        "updated": updated,
        "removed": removed,
        **counts,
        "packages": packages,
    }


def profile_body(package):
    """Router profile fields for a catalog entry"""
    body = {
        "name": package.name,
        "rate-limit": format_rate_limit(package.upload_kbps, package.download_kbps),
        "session-timeout": minutes_to_duration(package.duration_minutes),
        "idle-timeout": minutes_to_duration(package.idle_timeout_minutes),
    }
    if not body["rate-limit"]:
        del body["rate-limit"]
    return body


def _find_profile_id(gateway, package):
    for profile in gateway.list_profiles(package.service_type):
        if profile.get("name") == package.name:
            return _profile_id(profile)
    return None


def push_package(package, gateway=None):
    """
    Write the catalog values of one package to the router, creating the
    profile if it does not exist there. Resolves drift.

    Returns {"success", "router_profile_id", "message"} and records the
    failure on the package when the router call fails.
    """
    router = package.router
    gateway = gateway or RouterGateway.for_router(router)
    path = PROFILE_PATHS[package.service_type]
    body = profile_body(package)

    try:
        object_id = package.router_profile_id
        if object_id:
            try:
                gateway.update(path, object_id, body)
            except ProtocolError as e:
                if e.status != 404:
                    raise
                # Cached id went stale (router reset or profile recreated)
                object_id = None

        if not object_id:
            object_id = _find_profile_id(gateway, package)
            if object_id:
                gateway.update(path, object_id, body)
            else:
                object_id = gateway.create(path, body)

    except RouterError as e:
        logger.error(f"Failed to push package {package.name} to {router.name}: {e}")
        package.sync_status = "failed"
        package.save(update_fields=["sync_status", "updated_at"])
        return {
            "success": False,
            "router_profile_id": package.router_profile_id,
            "message": str(e),
            "error_type": e.error_type,
        }

    package.router_profile_id = object_id
    package.router_snapshot = {
        "session-timeout": body["session-timeout"],
        "idle-timeout": body["idle-timeout"],
        "rate-limit": body.get("rate-limit", ""),
    }
    package.sync_status = "synced"
    package.last_synced = timezone.now()
    package.save(
        update_fields=[
            "router_profile_id",
            "router_snapshot",
            "sync_status",
            "last_synced",
            "updated_at",
        ]
    )
    logger.info(f"Pushed package {package.name} to {router.name} (id {object_id})")
    return {
        "success": True,
        "router_profile_id": object_id,
        "message": f"Package {package.name} pushed to router",
    }


def delete_package(package):
    """
    Delete a catalog entry unless vouchers (active or historical) still
    reference it. Returns (deleted, message).
    """
    referencing = package.vouchers.count()
    if referencing:
        active = package.vouchers.filter(status="active").count()
        return (
            False,
            f"Cannot delete package {package.name}: {referencing} voucher(s) reference it "
            f"({active} active)",
        )

    name = package.name
    package.delete()
    logger.info(f"Deleted package {name}")
    return True, f"Package {name} deleted"
