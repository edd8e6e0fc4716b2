"""
Management command to test router connectivity and authentication
Run with: python manage.py check_router ROUTER_ID
"""
from django.core.management.base import BaseCommand, CommandError

from billing.exceptions import RouterError
from billing.models import Router
from billing.router_gateway import RouterGateway


class Command(BaseCommand):
    help = 'Test router REST API connectivity and list its services'

    def add_arguments(self, parser):
        parser.add_argument('router_id', type=int, help='Router ID to test')

    def handle(self, *args, **options):
        try:
            router = Router.objects.get(pk=options['router_id'])
        except Router.DoesNotExist:
            raise CommandError(f'Router {options["router_id"]} does not exist')

        gateway = RouterGateway.for_router(router)
        self.stdout.write(self.style.SUCCESS(f'Testing {router.name}\n'))
        self.stdout.write(f'Endpoint: {gateway.config.base_url}')
        self.stdout.write('-' * 50)

        self.stdout.write('\n1. Testing REST API access...')
        try:
            gateway.list_servers('hotspot')
        except RouterError as e:
            router.record_failure(e)
            self.stdout.write(self.style.ERROR(f'✗ {e.error_type}: {e}'))
            return
        router.record_contact()
        self.stdout.write(self.style.SUCCESS('✓ Router is reachable and credentials accepted'))

        for number, service_type in enumerate(('hotspot', 'pppoe'), start=2):
            self.stdout.write(f'\n{number}. {service_type} services...')
            try:
                servers = gateway.list_servers(service_type)
                profiles = gateway.list_profiles(service_type)
                sessions = gateway.list_active_sessions(service_type)
            except RouterError as e:
                self.stdout.write(self.style.WARNING(f'⚠ {e}'))
                continue
            self.stdout.write(
                self.style.SUCCESS(
                    f'✓ {len(servers)} servers, {len(profiles)} profiles, '
                    f'{len(sessions)} active sessions'
                )
            )

        self.stdout.write('\nDone!')
