"""
Tests for router service control and the provider registry
"""
from unittest.mock import patch

import requests
from django.test import TestCase

from billing.exceptions import UnsupportedProvider, UnsupportedService
from billing.models import ServiceIdentifier
from billing.providers import MikroTikProvider, get_provider
from billing.service_control import control_service

from .mocks import FakeRouterOS, make_router, make_tenant

HOTSPOT_SERVERS = "/rest/ip/hotspot"
PPPOE_SERVERS = "/rest/interface/pppoe-server/server"


class ServiceControlTest(TestCase):
    """enable / disable / restart / status against a fake router"""

    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        self.device = FakeRouterOS()
        self.server = self.device.add(
            HOTSPOT_SERVERS, {"name": "hotspot1", "interface": "bridge", "disabled": "false"}
        )
        patcher = patch("billing.router_gateway.requests.request", new=self.device)
        patcher.start()
        self.addCleanup(patcher.stop)
        sleep_patcher = patch("billing.service_control.time.sleep")
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def cache(self, object_id, service_type="hotspot", name="hotspot1"):
        return ServiceIdentifier.objects.create(
            router=self.router, service_type=service_type, name=name, object_id=object_id
        )

    def test_discovers_and_caches_id(self):
        """First use lists servers and remembers the id"""
        result = control_service(self.router, "hotspot", "disable")

        self.assertTrue(result["success"])
        self.assertEqual(self.server["disabled"], "true")
        cached = ServiceIdentifier.objects.get(router=self.router, service_type="hotspot")
        self.assertEqual(cached.object_id, self.server[".id"])

    def test_cached_id_skips_discovery(self):
        """A cached id is used without listing servers"""
        self.cache(self.server[".id"])

        result = control_service(self.router, "hotspot", "disable")

        self.assertTrue(result["success"])
        self.assertEqual(self.device.calls_to("GET", HOTSPOT_SERVERS), [])
        self.assertEqual(self.server["disabled"], "true")

    def test_stale_cached_id_is_rediscovered(self):
        """A cached id the router rejects is refreshed by name and retried"""
        self.cache("*99")
        self.server["disabled"] = "true"

        result = control_service(self.router, "hotspot", "enable")

        self.assertTrue(result["success"])
        self.assertEqual(result["object_id"], self.server[".id"])
        self.assertEqual(self.server["disabled"], "false")
        self.assertEqual(
            ServiceIdentifier.objects.get(router=self.router).object_id, self.server[".id"]
        )

    def test_restart_disables_then_enables(self):
        """Restart is disable, pause, enable"""
        result = control_service(self.router, "hotspot", "restart")

        self.assertTrue(result["success"])
        bodies = [body for _, _, body in self.device.calls_to("PATCH")]
        self.assertEqual(bodies, [{"disabled": "true"}, {"disabled": "false"}])
        self.sleep.assert_called_once_with(2)
        self.assertEqual(self.server["disabled"], "false")

    def test_restart_reports_failed_reenable(self):
        """A service left disabled is reported as such"""
        path = f"{HOTSPOT_SERVERS}/{self.server['.id']}"
        self.device.fail_on("PATCH", path, 2, requests.exceptions.ReadTimeout())

        result = control_service(self.router, "hotspot", "restart")

        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "timeout")
        self.assertIn("could not be re-enabled", result["error"])
        self.assertEqual(self.server["disabled"], "true")

    def test_status(self):
        """Status reports running state and active sessions and refreshes the cache"""
        self.cache("*99")
        self.device.add("/rest/ip/hotspot/active", {"user": "ABCD2345"})
        self.device.add("/rest/ip/hotspot/active", {"user": "EFGH6789"})

        result = control_service(self.router, "hotspot", "status")

        self.assertTrue(result["success"])
        self.assertTrue(result["running"])
        self.assertEqual(result["active_sessions"], 2)
        self.assertEqual(
            ServiceIdentifier.objects.get(router=self.router).object_id, self.server[".id"]
        )

    def test_pppoe_matches_service_name(self):
        """PPPoE servers are identified by their service-name"""
        server = self.device.add(
            PPPOE_SERVERS,
            {"service-name": "pppoe-server1", "interface": "ether2", "disabled": "true"},
        )

        result = control_service(self.router, "pppoe", "enable")

        self.assertTrue(result["success"])
        self.assertEqual(result["server_name"], "pppoe-server1")
        self.assertEqual(server["disabled"], "false")

    def test_server_not_found(self):
        """Unknown server names are reported, not raised"""
        result = control_service(self.router, "hotspot", "enable", server_name="guest")

        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "service_not_found")
        self.assertFalse(ServiceIdentifier.objects.exists())

    def test_router_unreachable(self):
        """Transport failures come back with their error_type"""
        self.device.fail(
            "GET",
            HOTSPOT_SERVERS,
            requests.exceptions.ConnectionError(ConnectionRefusedError(111, "refused")),
        )
        result = control_service(self.router, "hotspot", "status")

        self.assertFalse(result["success"])
        self.assertEqual(result["error_type"], "connection_refused")

    def test_invalid_input(self):
        """Unknown services and actions are rejected before any router call"""
        with self.assertRaises(UnsupportedService):
            control_service(self.router, "dhcp", "status")
        with self.assertRaises(ValueError):
            control_service(self.router, "hotspot", "reboot")
        self.assertEqual(self.device.calls, [])


class ProviderRegistryTest(TestCase):
    """get_provider lookups"""

    def setUp(self):
        self.router = make_router(make_tenant())

    def test_mikrotik_provider(self):
        """MikroTik routers support hotspot and PPPoE"""
        provider = get_provider(self.router)
        self.assertIsInstance(provider, MikroTikProvider)
        self.assertTrue(provider.supports_service("pppoe"))
        self.assertFalse(provider.supports_service("dhcp"))

    def test_unknown_provider(self):
        """Routers with an unregistered provider kind are rejected"""
        self.router.provider = "ubiquiti"
        with self.assertRaises(UnsupportedProvider):
            get_provider(self.router)

    def test_unsupported_service(self):
        """Providers refuse services they do not implement"""
        with self.assertRaises(UnsupportedService):
            get_provider(self.router).sync_packages_from_router("dhcp")
