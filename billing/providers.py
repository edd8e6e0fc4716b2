"""
Router provider registry

Each Router row names its provider kind; get_provider() maps that kind to
the implementation. The mapping is fixed at import time.
"""

from .catalog_sync import sync_packages
from .exceptions import UnsupportedProvider, UnsupportedService
from .router_gateway import RouterGateway
from .service_control import control_service
from .voucher_pool import generate_vouchers


class RouterProvider:
    """Capabilities every router provider exposes to the views and tasks"""

    kind = None
    services = ()

    def __init__(self, router, gateway=None):
        self.router = router
        self.gateway = gateway

    def supports_service(self, service_type):
        return service_type in self.services

    def _require(self, service_type):
        if not self.supports_service(service_type):
            raise UnsupportedService(
                f"{self.kind} routers do not support {service_type} service"
            )

    def sync_packages_from_router(self, service_type):
        raise NotImplementedError

    def generate_vouchers_for_service(self, service_type, package_name, quantity, **options):
        raise NotImplementedError

    def control_service(self, service_type, action, server_name=None):
        raise NotImplementedError


class MikroTikProvider(RouterProvider):
    kind = "mikrotik"
    services = ("hotspot", "pppoe")

    def _gateway(self):
        if self.gateway is None:
            self.gateway = RouterGateway.for_router(self.router)
        return self.gateway

    def sync_packages_from_router(self, service_type):
        self._require(service_type)
        return sync_packages(self.router, service_type, gateway=self._gateway())

    def generate_vouchers_for_service(self, service_type, package_name, quantity, **options):
        self._require(service_type)
        return generate_vouchers(
            self.router,
            package_name,
            quantity,
            service_type=service_type,
            gateway=self._gateway(),
            **options,
        )

    def control_service(self, service_type, action, server_name=None):
        self._require(service_type)
        return control_service(
            self.router, service_type, action, server_name, gateway=self._gateway()
        )


PROVIDERS = {
    "mikrotik": MikroTikProvider,
}


def get_provider(router, gateway=None):
    try:
        provider_class = PROVIDERS[router.provider]
    except KeyError:
        raise UnsupportedProvider(f"No provider registered for '{router.provider}'")
    return provider_class(router, gateway=gateway)
