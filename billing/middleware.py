"""
Custom middleware for multi-tenancy
"""
import logging

logger = logging.getLogger(__name__)


class TenantMiddleware:
    """
    Identify the operator's tenant from the X-API-Key header and expose it
    as request.tenant (None when absent or unknown).
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.tenant = None

        if not request.path.startswith('/admin/'):
            api_key = request.META.get('HTTP_X_API_KEY') or request.META.get('HTTP_API_KEY')
            if api_key:
                request.tenant = self._resolve(api_key)

        return self.get_response(request)

    def _resolve(self, api_key):
        from .models import Tenant

        try:
            tenant = Tenant.objects.get(api_key=api_key, is_active=True)
            logger.debug(f'Tenant resolved from API key: {tenant.slug}')
            return tenant
        except Tenant.DoesNotExist:
            logger.warning('Request carried an unknown or inactive API key')
            return None
