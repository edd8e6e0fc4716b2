"""
Enable, disable, restart and inspect router-side services (hotspot, PPPoE)

Server object ids are resolved cache-first from ServiceIdentifier and
rediscovered when the router no longer recognises a cached id.
"""

import logging
import time

from django.conf import settings
from django.utils import timezone

from .exceptions import ProtocolError, RouterError, ServiceNotFound, UnsupportedService
from .models import ServiceIdentifier
from .router_gateway import SERVER_NAME_FIELDS, SERVER_PATHS, RouterGateway

logger = logging.getLogger(__name__)

ACTIONS = ("restart", "enable", "disable", "status")


def default_server_name(service_type):
    if service_type == "pppoe":
        return settings.ROUTER_DEFAULT_PPPOE_SERVER
    return settings.ROUTER_DEFAULT_HOTSPOT_SERVER


def _server_name(server, service_type):
    return server.get(SERVER_NAME_FIELDS[service_type]) or server.get("name")


def _is_disabled(server):
    return str(server.get("disabled", "false")).lower() in ("true", "yes")


def cache_service_id(router, service_type, name, object_id):
    """Store the discovered id (last writer wins)"""
    ServiceIdentifier.objects.update_or_create(
        router=router,
        service_type=service_type,
        name=name,
        defaults={"object_id": object_id, "discovered_at": timezone.now()},
    )


def find_server(servers, service_type, name):
    for server in servers:
        if _server_name(server, service_type) == name:
            return server
    return None


def discover_service_id(gateway, router, service_type, name):
    """List servers, match by name and refresh the cache"""
    server = find_server(gateway.list_servers(service_type), service_type, name)
    if server is None:
        ServiceIdentifier.objects.filter(
            router=router, service_type=service_type, name=name
        ).delete()
        raise ServiceNotFound(f"{service_type} server '{name}' not found on {router.name}")

    object_id = server.get(".id") or server.get("id")
    cache_service_id(router, service_type, name, object_id)
    logger.info(f"Discovered {service_type} server {name} on {router.name}: {object_id}")
    return object_id


def resolve_service_id(gateway, router, service_type, name):
    """Returns (object_id, came_from_cache)"""
    cached = ServiceIdentifier.objects.filter(
        router=router, service_type=service_type, name=name
    ).first()
    if cached:
        return cached.object_id, True
    return discover_service_id(gateway, router, service_type, name), False


def set_service_disabled(gateway, router, service_type, name, disabled):
    """PATCH the server's disabled flag; retries once with a fresh id if the cached one is stale"""
    object_id, from_cache = resolve_service_id(gateway, router, service_type, name)
    try:
        gateway.set_server_disabled(service_type, object_id, disabled)
    except ProtocolError as e:
        if not from_cache or e.status not in (400, 404):
            raise
        logger.info(f"Cached id {object_id} for {name} rejected by {router.name}, rediscovering")
        object_id = discover_service_id(gateway, router, service_type, name)
        gateway.set_server_disabled(service_type, object_id, disabled)
    return object_id


def service_status(gateway, router, service_type, name):
    servers = gateway.list_servers(service_type)
    server = find_server(servers, service_type, name)
    if server is None:
        raise ServiceNotFound(f"{service_type} server '{name}' not found on {router.name}")

    object_id = server.get(".id") or server.get("id")
    cached = ServiceIdentifier.objects.filter(
        router=router, service_type=service_type, name=name
    ).first()
    if cached is None or cached.object_id != object_id:
        # Router may renumber objects across reboots
        cache_service_id(router, service_type, name, object_id)
        if cached is not None:
            logger.info(
                f"Refreshed cached id for {name} on {router.name}: {cached.object_id} -> {object_id}"
            )

    sessions = gateway.list_active_sessions(service_type)
    return {
        "object_id": object_id,
        "running": not _is_disabled(server),
        "server": server,
        "active_sessions": len(sessions),
        "sessions": sessions,
    }


def control_service(router, service_type, action, server_name=None, gateway=None):
    """
    Run one action against a router service.

    Returns {"success", "action", "service_type", "server_name", ...}.
    Router failures come back as {"success": False, "error", "error_type"}.
    """
    if service_type not in SERVER_PATHS:
        raise UnsupportedService(f"Unknown service type: {service_type}")
    if action not in ACTIONS:
        raise ValueError(f"Invalid action '{action}'. Use one of: {', '.join(ACTIONS)}")

    name = server_name or default_server_name(service_type)
    gateway = gateway or RouterGateway.for_router(router)
    result = {
        "success": True,
        "action": action,
        "service_type": service_type,
        "server_name": name,
    }

    try:
        if action == "status":
            result.update(service_status(gateway, router, service_type, name))

        elif action in ("enable", "disable"):
            result["object_id"] = set_service_disabled(
                gateway, router, service_type, name, disabled=(action == "disable")
            )
            result["message"] = f"{service_type} server {name} {action}d"

        else:
            set_service_disabled(gateway, router, service_type, name, disabled=True)
            time.sleep(settings.SERVICE_RESTART_DELAY)
            try:
                result["object_id"] = set_service_disabled(
                    gateway, router, service_type, name, disabled=False
                )
            except RouterError as e:
                logger.error(
                    f"{service_type} server {name} on {router.name} left disabled after restart: {e}"
                )
                router.record_failure(e)
                return {
                    **result,
                    "success": False,
                    "error": f"Service was disabled but could not be re-enabled: {e}",
                    "error_type": e.error_type,
                }
            result["message"] = f"{service_type} server {name} restarted"

    except ServiceNotFound as e:
        router.record_contact()
        return {**result, "success": False, "error": str(e), "error_type": "service_not_found"}
    except RouterError as e:
        logger.warning(f"{action} {service_type} on {router.name} failed: {e}")
        router.record_failure(e)
        return {**result, "success": False, "error": str(e), "error_type": e.error_type}

    router.record_contact()
    logger.info(f"{action} {service_type}/{name} on {router.name} succeeded")
    return result
