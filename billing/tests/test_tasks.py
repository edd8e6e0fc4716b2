"""
Tests for the expiry sweeps, deferred fulfilment and management commands
"""
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

import requests
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from billing.models import Package, Payment, Voucher
from billing.tasks import expire_vouchers, fulfil_pending_payments

from .mocks import FakeRouterOS, make_package, make_router, make_tenant

USERS = "/rest/ip/hotspot/user"


class TaskTestCase(TestCase):
    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        self.package = make_package(self.router)
        self.device = FakeRouterOS()
        patcher = patch("billing.router_gateway.requests.request", new=self.device)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.now = timezone.now()
        self._count = 0

    def add_voucher(self, provisioned=True, **fields):
        self._count += 1
        code = f"CODE{self._count:04d}"
        if provisioned:
            fields.setdefault(
                "router_user_id", self.device.add(USERS, {"name": code, "password": code})[".id"]
            )
        return Voucher.objects.create(
            tenant=self.tenant,
            router=self.router,
            package=self.package,
            code=code,
            payment_reference=f"VCHTEST{self._count:05d}",
            package_name=self.package.name,
            price=self.package.price,
            duration_minutes=self.package.duration_minutes,
            **fields,
        )


class ExpireVouchersTest(TaskTestCase):
    """Three independent expiry deadlines"""

    def test_activation_deadline(self):
        """Unsold vouchers past their deadline expire and leave the router"""
        voucher = self.add_voucher(activation_expires_at=self.now - timedelta(minutes=1))

        result = expire_vouchers(now=self.now)

        self.assertTrue(result["success"])
        self.assertEqual(result["activation_deadline"], 1)
        self.assertEqual(result["removed_from_router"], 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "expired")
        self.assertEqual(voucher.expired_by, "activation_deadline")
        self.assertEqual(self.device.records(USERS), [])

    def test_purchase_deadline(self):
        """Vouchers timed from purchase expire once the duration has passed"""
        voucher = self.add_voucher(
            status="paid",
            transaction_id="QK1",
            timed_on_purchase=True,
            purchase_expires_at=self.now - timedelta(seconds=1),
        )

        result = expire_vouchers(now=self.now)

        self.assertEqual(result["purchase_deadline"], 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.expired_by, "purchase_deadline")

    def test_usage_end(self):
        """Used vouchers expire at the end of their session window"""
        voucher = self.add_voucher(
            status="used", transaction_id="QK2", usage_ends_at=self.now - timedelta(hours=1)
        )

        result = expire_vouchers(now=self.now)

        self.assertEqual(result["usage_end"], 1)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "expired")

    def test_future_deadlines_untouched(self):
        """Nothing expires early"""
        self.add_voucher(activation_expires_at=self.now + timedelta(days=1))
        self.add_voucher(
            status="paid",
            transaction_id="QK3",
            purchase_expires_at=self.now + timedelta(minutes=5),
        )

        result = expire_vouchers(now=self.now)

        self.assertEqual(result["expired"], 0)
        self.assertEqual(Voucher.objects.filter(status="expired").count(), 0)
        self.assertEqual(len(self.device.records(USERS)), 2)

    def test_sold_voucher_ignores_activation_deadline(self):
        """A sold voucher is not expired by its unsold deadline"""
        self.add_voucher(
            status="paid",
            transaction_id="QK4",
            activation_expires_at=self.now - timedelta(days=1),
        )
        self.assertEqual(expire_vouchers(now=self.now)["expired"], 0)

    def test_keep_router_user_without_auto_delete(self):
        """auto_delete=False expires the voucher but leaves the router user"""
        self.add_voucher(
            activation_expires_at=self.now - timedelta(minutes=1), auto_delete=False
        )

        result = expire_vouchers(now=self.now)

        self.assertEqual(result["expired"], 1)
        self.assertEqual(result["removed_from_router"], 0)
        self.assertEqual(len(self.device.records(USERS)), 1)

    def test_offline_router_not_contacted(self):
        """Expiry still happens when the router is offline"""
        self.router.status = "offline"
        self.router.save()
        self.add_voucher(activation_expires_at=self.now - timedelta(minutes=1))

        result = expire_vouchers(now=self.now)

        self.assertEqual(result["expired"], 1)
        self.assertEqual(result["removed_from_router"], 0)
        self.assertEqual(self.device.calls, [])

    def test_router_delete_failure_is_not_fatal(self):
        """A router error while removing the user does not undo expiry"""
        voucher = self.add_voucher(activation_expires_at=self.now - timedelta(minutes=1))
        self.device.fail(
            "DELETE",
            f"{USERS}/{voucher.router_user_id}",
            requests.exceptions.ReadTimeout(),
        )

        result = expire_vouchers(now=self.now)

        self.assertTrue(result["success"])
        self.assertEqual(result["expired"], 1)
        self.assertEqual(result["removed_from_router"], 0)


class FulfilPendingPaymentsTest(TaskTestCase):
    """Deferred delivery for payments that met an empty pool"""

    def make_pending(self, reference="PAY0000000001", tid="QK9"):
        return Payment.objects.create(
            tenant=self.tenant,
            router=self.router,
            package_name=self.package.name,
            order_reference=reference,
            phone_number="254712345678",
            amount=self.package.price,
            paid_amount=self.package.price,
            paid_at=self.now,
            transaction_id=tid,
            status="pending_voucher",
        )

    def test_waits_for_stock(self):
        """Payments stay pending while the pool is empty"""
        self.make_pending()
        result = fulfil_pending_payments()
        self.assertEqual(result["fulfilled"], 0)
        self.assertEqual(result["still_waiting"], 1)

    def test_fulfils_in_payment_order(self):
        """The earliest payment gets the only voucher"""
        first = self.make_pending("PAY0000000001", "QK1")
        second = self.make_pending("PAY0000000002", "QK2")
        Payment.objects.filter(pk=second.pk).update(paid_at=self.now + timedelta(minutes=1))
        self.add_voucher(provisioned=False)

        result = fulfil_pending_payments()

        self.assertEqual(result["fulfilled"], 1)
        self.assertEqual(result["still_waiting"], 1)
        first.refresh_from_db()
        self.assertEqual(first.status, "completed")
        self.assertEqual(first.voucher.transaction_id, "QK1")


class ManagementCommandTest(TaskTestCase):
    """Command wrappers around the tasks"""

    def run_command(self, *args, **options):
        out = StringIO()
        call_command(*args, stdout=out, **options)
        return out.getvalue()

    def test_expire_vouchers_command(self):
        """Reports counts per deadline"""
        self.add_voucher(activation_expires_at=timezone.now() - timedelta(minutes=1))
        output = self.run_command("expire_vouchers")
        self.assertIn("Expired 1 vouchers", output)
        self.assertIn("Done!", output)

    def test_fulfil_pending_payments_command(self):
        """Reports fulfilled payments"""
        output = self.run_command("fulfil_pending_payments")
        self.assertIn("Fulfilled 0 payments", output)

    def test_sync_packages_command(self):
        """Syncs the selected router"""
        self.device.add("/rest/ip/hotspot/user/profile", {"name": "1day-50ksh", "session-timeout": "1d"})
        output = self.run_command("sync_packages", router=self.router.pk)
        self.assertIn("1 added", output)
        self.assertTrue(Package.objects.filter(name="1day-50ksh").exists())

    def test_check_router_command(self):
        """Reports reachability and per-service inventory"""
        self.device.add("/rest/ip/hotspot", {"name": "hotspot1"})
        output = self.run_command("check_router", str(self.router.pk))
        self.assertIn("Router is reachable", output)
        self.assertIn("1 servers", output)
