"""
Django management command to reconcile package catalogs with routers
Run with: python manage.py sync_packages [--router ID] [--service-type pppoe]
"""
from django.core.management.base import BaseCommand

from billing.exceptions import ConnectivityError
from billing.models import Router
from billing.providers import get_provider


class Command(BaseCommand):
    help = 'Read service profiles from routers and reconcile the package catalog'

    def add_arguments(self, parser):
        parser.add_argument(
            '--router',
            type=int,
            help='Only sync this router ID (default: every active router)',
        )
        parser.add_argument(
            '--service-type',
            choices=['hotspot', 'pppoe'],
            default='hotspot',
            help='Service whose profiles are synced (default: hotspot)',
        )

    def handle(self, *args, **options):
        routers = Router.objects.filter(is_active=True).select_related('tenant')
        if options['router']:
            routers = routers.filter(pk=options['router'])

        service_type = options['service_type']
        failed = 0

        for router in routers:
            self.stdout.write(f'Syncing {service_type} packages on {router.name} ({router.host})...')
            try:
                result = get_provider(router).sync_packages_from_router(service_type)
            except ConnectivityError as e:
                failed += 1
                self.stdout.write(self.style.ERROR(f'✗ {router.name}: {e}'))
                continue

            self.stdout.write(
                self.style.SUCCESS(
                    f'✓ {result["added"]} added, {result["updated"]} updated, '
                    f'{result["removed"]} missing from router'
                )
            )
            if result['drifted']:
                self.stdout.write(
                    self.style.WARNING(f'⚠ {result["drifted"]} packages differ from the router')
                )

        if failed:
            self.stdout.write(self.style.WARNING(f'\n⚠ {failed} routers could not be reached'))
        self.stdout.write('\nDone!')
