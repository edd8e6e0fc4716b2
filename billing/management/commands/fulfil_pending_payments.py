"""
Django management command to deliver vouchers for payments that found the pool empty
Run with: python manage.py fulfil_pending_payments
"""
from django.core.management.base import BaseCommand

from billing.tasks import fulfil_pending_payments


class Command(BaseCommand):
    help = 'Retry voucher delivery for paid purchases awaiting stock'

    def handle(self, *args, **options):
        self.stdout.write('Retrying payments awaiting a voucher...')

        result = fulfil_pending_payments()

        self.stdout.write(self.style.SUCCESS(f'✓ Fulfilled {result["fulfilled"]} payments'))
        if result['still_waiting']:
            self.stdout.write(
                self.style.WARNING(f'⚠ {result["still_waiting"]} payments still waiting for stock')
            )
        if result['failed']:
            self.stdout.write(self.style.ERROR(f'✗ {result["failed"]} payments raised errors'))

        self.stdout.write('\nDone!')
