"""
Django management command to expire vouchers past their deadlines
Run with: python manage.py expire_vouchers
"""
from django.core.management.base import BaseCommand

from billing.tasks import expire_vouchers


class Command(BaseCommand):
    help = 'Expire unsold and used-up vouchers and remove their router users'

    def handle(self, *args, **options):
        self.stdout.write('Checking for expired vouchers...')

        result = expire_vouchers()

        if result['success']:
            self.stdout.write(self.style.SUCCESS(f'✓ Expired {result["expired"]} vouchers'))
            self.stdout.write(f'  Activation deadline passed: {result["activation_deadline"]}')
            self.stdout.write(f'  Purchase deadline passed: {result["purchase_deadline"]}')
            self.stdout.write(f'  Usage ended: {result["usage_end"]}')
            self.stdout.write(f'  Router users removed: {result["removed_from_router"]}')
        else:
            self.stdout.write(
                self.style.ERROR(f'✗ Error: {result.get("error", "Unknown error")}')
            )

        self.stdout.write('\nDone!')
