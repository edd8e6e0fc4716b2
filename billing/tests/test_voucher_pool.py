"""
Tests for voucher generation, re-sync and cancellation
"""
from unittest.mock import patch

from django.test import TestCase, override_settings

from billing.models import OperatorAlert, Voucher
from billing.voucher_pool import VoucherPoolError, cancel_voucher, generate_vouchers, resync_vouchers

from .mocks import FakeResponse, FakeRouterOS, make_package, make_router, make_tenant

USERS = "/rest/ip/hotspot/user"


@override_settings(VOUCHER_SYNC_WORKERS=1)
class GenerateVouchersTest(TestCase):
    """Batch generation and provisioning"""

    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        self.package = make_package(self.router)
        self.device = FakeRouterOS()
        patcher = patch("billing.router_gateway.requests.request", new=self.device)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_one_failure_does_not_abort_batch(self):
        """Ten vouchers with the fifth provisioning failing: nine synced, one failed"""
        self.device.fail_on("PUT", USERS, 5, FakeResponse({"detail": "failure"}, status_code=500))

        result = generate_vouchers(self.router, "1hour-10ksh", 10)

        self.assertEqual(result["synced_count"], 9)
        self.assertEqual(result["failed_count"], 1)
        self.assertEqual(Voucher.objects.filter(batch_id=result["batch_id"]).count(), 10)
        self.assertTrue(all(v.status == "active" for v in result["vouchers"]))

        failed = [v for v in result["vouchers"] if not v.router_user_id]
        self.assertEqual(len(failed), 1)
        self.assertIn("protocol_error", failed[0].router_sync_error)
        self.assertEqual(len(self.device.records(USERS)), 9)
        self.assertTrue(
            OperatorAlert.objects.filter(alert_type="provisioning_failure").exists()
        )

    def test_router_user_matches_voucher(self):
        """Router user name and password are the code, profile is the package"""
        result = generate_vouchers(self.router, "1hour-10ksh", 1)
        voucher = result["vouchers"][0]
        user = self.device.records(USERS)[0]

        self.assertEqual(user["name"], voucher.code)
        self.assertEqual(user["password"], voucher.code)
        self.assertEqual(user["profile"], "1hour-10ksh")
        self.assertEqual(user["limit-uptime"], "1h")
        self.assertEqual(voucher.router_user_id, user[".id"])
        self.assertIsNotNone(voucher.synced_at)

    def test_codes_and_references(self):
        """Codes use the unambiguous alphabet; the payment reference is separate"""
        result = generate_vouchers(self.router, "1hour-10ksh", 20, sync_to_router=False)
        codes = [v.code for v in result["vouchers"]]

        self.assertEqual(len(set(codes)), 20)
        for voucher in result["vouchers"]:
            self.assertEqual(len(voucher.code), 8)
            self.assertTrue(set(voucher.code) <= set(Voucher.CODE_ALPHABET))
            self.assertTrue(voucher.payment_reference.startswith("VCH"))
            self.assertNotIn(voucher.code, voucher.payment_reference)
        self.assertEqual(self.device.calls, [])

    def test_package_snapshot(self):
        """Package values are copied onto each voucher"""
        voucher = generate_vouchers(self.router, "1hour-10ksh", 1, sync_to_router=False)["vouchers"][0]
        self.assertEqual(voucher.package_name, "1hour-10ksh")
        self.assertEqual(voucher.price, 10)
        self.assertEqual(voucher.duration_minutes, 60)

    def test_quantity_bounds(self):
        """Quantity must be within 1..1000"""
        for quantity in (0, -1, 1001):
            with self.assertRaises(VoucherPoolError):
                generate_vouchers(self.router, "1hour-10ksh", quantity)
        self.assertEqual(Voucher.objects.count(), 0)

    def test_unknown_package(self):
        """Vouchers can only be cut for catalog packages"""
        with self.assertRaises(VoucherPoolError):
            generate_vouchers(self.router, "missing", 1)

    def test_offline_router_not_contacted(self):
        """Vouchers are stored but not provisioned when the router is offline"""
        self.router.status = "offline"
        self.router.save()

        result = generate_vouchers(self.router, "1hour-10ksh", 3)

        self.assertEqual(result["synced_count"], 0)
        self.assertEqual(Voucher.objects.count(), 3)
        self.assertEqual(self.device.calls, [])

    def test_missing_object_id(self):
        """A creation response without an id is recorded on the voucher"""
        self.device.fail("PUT", USERS, FakeResponse({}))
        voucher = generate_vouchers(self.router, "1hour-10ksh", 1)["vouchers"][0]

        self.assertIsNone(voucher.router_user_id)
        self.assertEqual(
            voucher.router_sync_error, "Created on router but no object id was returned"
        )

    def test_expiry_policy(self):
        """Activation deadline and purchase-anchored expiry are set independently"""
        timed = generate_vouchers(
            self.router,
            "1hour-10ksh",
            1,
            expiry_days=7,
            usage_timed_on_purchase=True,
            sync_to_router=False,
        )["vouchers"][0]
        self.assertIsNotNone(timed.activation_expires_at)
        self.assertTrue(timed.timed_on_purchase)

        open_ended = generate_vouchers(
            self.router, "1hour-10ksh", 1, auto_expire=False, sync_to_router=False
        )["vouchers"][0]
        self.assertIsNone(open_ended.activation_expires_at)
        self.assertFalse(open_ended.auto_delete)
        self.assertFalse(open_ended.timed_on_purchase)


@override_settings(VOUCHER_SYNC_WORKERS=1)
class ResyncAndCancelTest(TestCase):
    """Bulk re-sync and cancellation"""

    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        make_package(self.router)
        self.device = FakeRouterOS()
        patcher = patch("billing.router_gateway.requests.request", new=self.device)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.vouchers = generate_vouchers(
            self.router, "1hour-10ksh", 2, sync_to_router=False
        )["vouchers"]

    def test_resync_backfills_and_provisions(self):
        """Existing router users get their id recorded; missing ones are created"""
        present, missing = self.vouchers
        user = self.device.add(USERS, {"name": present.code, "password": present.code})

        result = resync_vouchers(self.router)

        self.assertEqual(result["results"]["already_exists"], 1)
        self.assertEqual(result["results"]["updated"], 1)
        self.assertEqual(result["results"]["synced"], 1)
        present.refresh_from_db()
        missing.refresh_from_db()
        self.assertEqual(present.router_user_id, user[".id"])
        self.assertIsNotNone(missing.router_user_id)
        self.assertEqual(len(self.device.records(USERS)), 2)

    def test_cancel_unsold_voucher(self):
        """Cancellation removes the router user"""
        generate = generate_vouchers(self.router, "1hour-10ksh", 1)
        voucher = generate["vouchers"][0]

        result = cancel_voucher(voucher)

        self.assertTrue(result["router_deleted"])
        self.assertEqual(result["voucher"].status, "cancelled")
        self.assertEqual(self.device.records(USERS), [])

    def test_cancel_sold_voucher_refused(self):
        """Paid vouchers cannot be cancelled"""
        voucher = self.vouchers[0]
        Voucher.objects.filter(pk=voucher.pk).update(status="paid", transaction_id="QK1")
        voucher.refresh_from_db()

        with self.assertRaises(VoucherPoolError):
            cancel_voucher(voucher)
        voucher.refresh_from_db()
        self.assertEqual(voucher.status, "paid")

    def test_cancel_twice(self):
        """Second cancellation is rejected"""
        voucher = self.vouchers[0]
        cancel_voucher(voucher)
        with self.assertRaises(VoucherPoolError):
            cancel_voucher(voucher)
