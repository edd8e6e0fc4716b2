"""
Tests for payment settlement: idempotency, atomic claims, out-of-stock handling
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

from django.db import connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone

from billing.exceptions import DuplicateTransaction, OutOfStock, VoucherNotFound
from billing.models import (
    Customer,
    OperatorAlert,
    Payment,
    PaymentWebhook,
    Voucher,
    hash_phone_number,
)
from billing.settlement import (
    PaymentConfirmation,
    attach_checkout_request,
    claim_voucher,
    create_purchase_intent,
    find_purchased_voucher,
    process_confirmation,
    record_stk_result,
)
from billing.tasks import fulfil_pending_payments

from .mocks import make_package, make_router, make_tenant

HASHED_MSISDN = hash_phone_number("254712345678")


def confirmation_payload(bill_reference, trans_id="QK123ABC", amount="10.00", msisdn="254712345678"):
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20260115103000",
        "TransAmount": amount,
        "BusinessShortCode": "600000",
        "BillRefNumber": bill_reference,
        "MSISDN": msisdn,
        "FirstName": "JOHN",
    }


class SettlementTestCase(TestCase):
    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        self.package = make_package(self.router)

    def add_voucher(self, code, reference, **fields):
        return Voucher.objects.create(
            tenant=self.tenant,
            router=self.router,
            package=self.package,
            code=code,
            payment_reference=reference,
            package_name=self.package.name,
            price=self.package.price,
            duration_minutes=self.package.duration_minutes,
            **fields,
        )

    def add_intent(self, reference="PAYA1B2C3D4E5", phone="254712345678"):
        return Payment.objects.create(
            tenant=self.tenant,
            router=self.router,
            package_name=self.package.name,
            order_reference=reference,
            phone_number=phone,
            amount=self.package.price,
        )


class PaymentConfirmationTest(SettlementTestCase):
    """Payload normalization"""

    def test_from_payload(self):
        """Amount is a two-place decimal, TransTime is local time"""
        confirmation = PaymentConfirmation.from_payload(confirmation_payload("VCHX", amount="10"))
        self.assertEqual(confirmation.amount, Decimal("10.00"))
        self.assertEqual(confirmation.transaction_id, "QK123ABC")
        local = timezone.localtime(confirmation.paid_at)
        self.assertEqual((local.hour, local.minute), (10, 30))

    def test_missing_fields(self):
        """TransID, TransAmount and BillRefNumber are required"""
        payload = confirmation_payload("VCHX")
        del payload["TransID"]
        with self.assertRaises(ValueError):
            PaymentConfirmation.from_payload(payload)

    def test_malformed_payload_not_acknowledged(self):
        """Malformed deliveries get a failure acknowledgment and a log row"""
        result = process_confirmation({"TransAmount": "abc"})
        self.assertFalse(result["acknowledge"])
        self.assertEqual(result["outcome"], "invalid")
        self.assertEqual(PaymentWebhook.objects.get().processing_status, "failed")


class ManualSettlementTest(SettlementTestCase):
    """BillRefNumber is the voucher's payment reference"""

    def setUp(self):
        super().setUp()
        self.voucher = self.add_voucher("ABCD2345", "VCHKP7M2QX9A")

    def test_settles_voucher(self):
        """Matching payment marks the voucher paid and links the customer"""
        result = process_confirmation(confirmation_payload("vchkp7m2qx9a"))

        self.assertTrue(result["acknowledge"])
        self.assertEqual(result["outcome"], "settled")
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "paid")
        self.assertEqual(self.voucher.transaction_id, "QK123ABC")
        self.assertEqual(self.voucher.paid_amount, Decimal("10.00"))
        self.assertEqual(self.voucher.customer.phone_hash, HASHED_MSISDN)
        self.assertEqual(self.voucher.customer.total_purchases, 1)

        log = PaymentWebhook.objects.get()
        self.assertEqual(log.outcome, "settled")
        self.assertEqual(log.voucher, self.voucher)

    def test_repeated_delivery_is_idempotent(self):
        """The same TransID delivered repeatedly settles once and is always acknowledged"""
        payload = confirmation_payload("VCHKP7M2QX9A")
        outcomes = [process_confirmation(payload) for _ in range(3)]

        self.assertEqual([r["outcome"] for r in outcomes], ["settled", "duplicate", "duplicate"])
        self.assertTrue(all(r["acknowledge"] for r in outcomes))
        self.assertEqual(Voucher.objects.filter(transaction_id="QK123ABC").count(), 1)
        self.assertEqual(Customer.objects.get().total_purchases, 1)
        self.assertEqual(PaymentWebhook.objects.count(), 3)
        self.assertEqual(
            PaymentWebhook.objects.filter(processing_status="ignored").count(), 2
        )

    def test_second_transaction_for_sold_voucher(self):
        """A different TransID for a sold voucher is acknowledged but not applied"""
        process_confirmation(confirmation_payload("VCHKP7M2QX9A", trans_id="QK1"))
        result = process_confirmation(confirmation_payload("VCHKP7M2QX9A", trans_id="QK2"))

        self.assertTrue(result["acknowledge"])
        self.assertEqual(result["outcome"], "already_settled")
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.transaction_id, "QK1")

    def test_amount_mismatch(self):
        """Underpayment is rejected without a retry and the voucher stays in the pool"""
        result = process_confirmation(confirmation_payload("VCHKP7M2QX9A", amount="5.00"))

        self.assertTrue(result["acknowledge"])
        self.assertEqual(result["outcome"], "amount_mismatch")
        log = PaymentWebhook.objects.get()
        self.assertEqual(log.processing_status, "failed")
        self.assertEqual(log.outcome, "amount_mismatch")
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "active")
        self.assertIsNone(self.voucher.transaction_id)

    def test_unknown_reference(self):
        """Unknown references get a failure acknowledgment"""
        result = process_confirmation(confirmation_payload("VCHNOTREAL99"))
        self.assertFalse(result["acknowledge"])
        self.assertEqual(result["outcome"], "voucher_not_found")
        self.assertEqual(PaymentWebhook.objects.get().outcome, "voucher_not_found")

    def test_hashed_msisdn(self):
        """A SHA-256 MSISDN is stored as the phone hash without a plaintext number"""
        process_confirmation(confirmation_payload("VCHKP7M2QX9A", msisdn=HASHED_MSISDN))
        customer = Customer.objects.get()
        self.assertEqual(customer.phone_hash, HASHED_MSISDN)
        self.assertEqual(customer.phone_number, "")

    def test_local_phone_format_matches_hash(self):
        """07... and 2547... identify the same customer"""
        process_confirmation(confirmation_payload("VCHKP7M2QX9A", msisdn="0712345678"))
        self.assertEqual(Customer.objects.get().phone_hash, HASHED_MSISDN)

    def test_commission(self):
        """Personal accounts pay 20 percent"""
        process_confirmation(confirmation_payload("VCHKP7M2QX9A"))
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.commission, Decimal("2.00"))

    def test_isp_commission_is_zero(self):
        """ISP accounts pay no commission"""
        self.tenant.account_type = "isp"
        self.tenant.save()
        process_confirmation(confirmation_payload("VCHKP7M2QX9A"))
        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.commission, Decimal("0.00"))

    def test_purchase_timed_expiry(self):
        """Vouchers timed on purchase expire duration after payment"""
        Voucher.objects.filter(pk=self.voucher.pk).update(timed_on_purchase=True)
        process_confirmation(confirmation_payload("VCHKP7M2QX9A"))
        self.voucher.refresh_from_db()
        self.assertEqual(
            self.voucher.purchase_expires_at - self.voucher.paid_at, timedelta(minutes=60)
        )


class IntentSettlementTest(SettlementTestCase):
    """BillRefNumber is a purchase intent's order reference"""

    def test_claims_from_pool(self):
        """The intent gets one voucher for its router and package"""
        voucher = self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        payment = self.add_intent()

        result = process_confirmation(confirmation_payload(payment.order_reference))

        self.assertEqual(result["outcome"], "settled")
        payment.refresh_from_db()
        voucher.refresh_from_db()
        self.assertEqual(payment.status, "completed")
        self.assertEqual(payment.voucher, voucher)
        self.assertEqual(payment.transaction_id, "QK123ABC")
        self.assertEqual(voucher.status, "paid")

    def test_two_payments_one_voucher(self):
        """Two transactions competing for one voucher: exactly one wins"""
        voucher = self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        first = self.add_intent("PAY0000000001")
        second = self.add_intent("PAY0000000002")

        results = [
            process_confirmation(confirmation_payload(first.order_reference, trans_id="QK1")),
            process_confirmation(confirmation_payload(second.order_reference, trans_id="QK2")),
        ]

        self.assertEqual([r["outcome"] for r in results], ["settled", "out_of_stock"])
        voucher.refresh_from_db()
        self.assertEqual(voucher.transaction_id, "QK1")
        self.assertEqual(Voucher.objects.exclude(status="active").count(), 1)

    def test_expired_vouchers_not_claimed(self):
        """Vouchers past their activation deadline stay out of sales"""
        self.add_voucher(
            "ABCD2345",
            "VCHKP7M2QX9A",
            activation_expires_at=timezone.now() - timedelta(minutes=1),
        )
        payment = self.add_intent()
        result = process_confirmation(confirmation_payload(payment.order_reference))
        self.assertEqual(result["outcome"], "out_of_stock")

    def test_out_of_stock_then_fulfilled(self):
        """Empty pool: payment parked, operator alerted, voucher delivered after restock"""
        payment = self.add_intent()

        result = process_confirmation(confirmation_payload(payment.order_reference))

        self.assertTrue(result["acknowledge"])
        self.assertEqual(result["outcome"], "out_of_stock")
        payment.refresh_from_db()
        self.assertEqual(payment.status, "pending_voucher")
        self.assertEqual(payment.transaction_id, "QK123ABC")
        alert = OperatorAlert.objects.get(alert_type="out_of_stock")
        self.assertEqual(alert.severity, "critical")

        again = process_confirmation(confirmation_payload(payment.order_reference))
        self.assertEqual(again["outcome"], "duplicate")
        self.assertEqual(OperatorAlert.objects.count(), 1)

        voucher = self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        summary = fulfil_pending_payments()

        self.assertEqual(summary["fulfilled"], 1)
        payment.refresh_from_db()
        voucher.refresh_from_db()
        self.assertEqual(payment.status, "completed")
        self.assertEqual(voucher.transaction_id, "QK123ABC")
        self.assertEqual(voucher.status, "paid")

    def test_hashed_msisdn_keeps_intent_phone(self):
        """The intent's phone fills in when the gateway only sends a hash"""
        self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        payment = self.add_intent(phone="254700000001")
        process_confirmation(confirmation_payload(payment.order_reference, msisdn=HASHED_MSISDN))
        customer = Customer.objects.get()
        self.assertEqual(customer.phone_hash, HASHED_MSISDN)
        self.assertEqual(customer.phone_number, "254700000001")

    def test_claims_matching_service_type(self):
        """A PPPoE intent never receives a hotspot voucher of the same name"""
        self.add_voucher("HOTS2345", "VCHHOTSPOT01")
        pppoe = make_package(self.router, service_type="pppoe")
        pppoe_voucher = Voucher.objects.create(
            tenant=self.tenant,
            router=self.router,
            package=pppoe,
            service_type="pppoe",
            code="PPPE2345",
            payment_reference="VCHPPPOE0001",
            package_name=pppoe.name,
            price=pppoe.price,
        )
        payment = self.add_intent()
        Payment.objects.filter(pk=payment.pk).update(service_type="pppoe")

        result = process_confirmation(confirmation_payload(payment.order_reference))

        self.assertEqual(result["outcome"], "settled")
        self.assertEqual(result["voucher"], pppoe_voucher)
        self.assertEqual(Voucher.objects.get(code="HOTS2345").status, "active")


class ClaimVoucherTest(SettlementTestCase):
    """The pool claim primitive"""

    def test_empty_pool(self):
        """No candidate returns None"""
        self.assertIsNone(
            claim_voucher(self.router.pk, self.package.name, "QK1", "", Decimal("10"), timezone.now())
        )

    def test_skips_claimed_vouchers(self):
        """Claims move on to the next active voucher"""
        self.add_voucher("AAAA2222", "VCHAAAAAAAAA", status="assigned", transaction_id="QK0")
        second = self.add_voucher("BBBB3333", "VCHBBBBBBBBB")
        claimed = claim_voucher(self.router.pk, self.package.name, "QK1", "", Decimal("10"), timezone.now())
        self.assertEqual(claimed, second)
        self.assertEqual(claimed.status, "assigned")

    def test_transaction_id_claims_once(self):
        """A transaction id already on a voucher cannot claim another"""
        self.add_voucher("AAAA2222", "VCHAAAAAAAAA", status="paid", transaction_id="QK1")
        self.add_voucher("BBBB3333", "VCHBBBBBBBBB")
        with self.assertRaises(DuplicateTransaction):
            claim_voucher(self.router.pk, self.package.name, "QK1", "", Decimal("10"), timezone.now())


class PurchaseIntentTest(SettlementTestCase):
    """Intent creation and STK results"""

    def test_create_intent(self):
        """A fresh bill reference is issued for a stocked package"""
        self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        payment = create_purchase_intent(self.router, "1hour-10ksh", "0712345678")
        self.assertTrue(payment.order_reference.startswith("PAY"))
        self.assertEqual(payment.amount, 10)
        self.assertEqual(payment.phone_number, "254712345678")

    def test_refused_when_out_of_stock(self):
        """No intent is created for a sold-out package"""
        with self.assertRaises(OutOfStock):
            create_purchase_intent(self.router, "1hour-10ksh", "0712345678")
        self.assertEqual(Payment.objects.count(), 0)

    def test_unknown_package(self):
        """Unknown packages are rejected"""
        with self.assertRaises(VoucherNotFound):
            create_purchase_intent(self.router, "nope", "0712345678")

    def test_failed_stk_marks_intent_failed(self):
        """A cancelled STK push fails the pending intent"""
        payment = self.add_intent()
        Payment.objects.filter(pk=payment.pk).update(checkout_request_id="ws_CO_123")
        payload = {
            "Body": {
                "stkCallback": {
                    "CheckoutRequestID": "ws_CO_123",
                    "ResultCode": 1032,
                    "ResultDesc": "Request cancelled by user",
                }
            }
        }

        self.assertTrue(record_stk_result(payload))
        payment.refresh_from_db()
        self.assertEqual(payment.status, "failed")
        self.assertEqual(PaymentWebhook.objects.get().outcome, "stk_failed")

    def test_intent_keeps_service_and_checkout(self):
        """Service type and a known CheckoutRequestID are stored on the intent"""
        self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        payment = create_purchase_intent(
            self.router, "1hour-10ksh", "0712345678", checkout_request_id="ws_CO_777"
        )
        payment.refresh_from_db()
        self.assertEqual(payment.service_type, "hotspot")
        self.assertEqual(payment.checkout_request_id, "ws_CO_777")

    def test_attach_checkout_then_stk_failure(self):
        """A checkout id linked after the push lets the STK result find the intent"""
        payment = self.add_intent()

        self.assertTrue(attach_checkout_request(payment, "ws_CO_456"))
        record_stk_result(
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_456", "ResultCode": 1037}}}
        )

        payment.refresh_from_db()
        self.assertEqual(payment.status, "failed")

    def test_attach_checkout_refused_after_payment(self):
        """Settled intents keep their checkout id"""
        payment = self.add_intent()
        payment.mark_failed("cancelled")
        self.assertFalse(attach_checkout_request(payment, "ws_CO_456"))
        payment.refresh_from_db()
        self.assertEqual(payment.checkout_request_id, "")


class FindPurchasedVoucherTest(SettlementTestCase):
    """Voucher recovery by transaction code and phone"""

    def setUp(self):
        super().setUp()
        self.voucher = self.add_voucher("ABCD2345", "VCHKP7M2QX9A")
        process_confirmation(confirmation_payload("VCHKP7M2QX9A", trans_id="QK12345678"))

    def test_found_with_matching_phone(self):
        """The payer's phone in local format finds the voucher"""
        voucher, _ = find_purchased_voucher(self.router, "qk12345678", "0712345678")
        self.assertEqual(voucher, self.voucher)

    def test_other_phone_gets_nothing(self):
        """Someone else's phone cannot recover the voucher"""
        voucher, payment = find_purchased_voucher(self.router, "QK12345678", "0799999999")
        self.assertIsNone(voucher)
        self.assertIsNone(payment)

    def test_other_router_gets_nothing(self):
        """Transactions are looked up per router"""
        other = make_router(self.tenant, name="edge")
        voucher, _ = find_purchased_voucher(other, "QK12345678", "0712345678")
        self.assertIsNone(voucher)


class ConcurrentSettlementTest(TransactionTestCase):
    """Deliveries racing on separate database connections"""

    def setUp(self):
        self.tenant = make_tenant()
        self.router = make_router(self.tenant)
        self.package = make_package(self.router)
        self.voucher = Voucher.objects.create(
            tenant=self.tenant,
            router=self.router,
            package=self.package,
            code="ABCD2345",
            payment_reference="VCHKP7M2QX9A",
            package_name=self.package.name,
            price=self.package.price,
            duration_minutes=self.package.duration_minutes,
        )

    def add_intent(self, reference):
        return Payment.objects.create(
            tenant=self.tenant,
            router=self.router,
            package_name=self.package.name,
            order_reference=reference,
            phone_number="254712345678",
            amount=self.package.price,
        )

    def deliver_together(self, payloads):
        barrier = threading.Barrier(len(payloads))

        def deliver(payload):
            try:
                barrier.wait(timeout=10)
                result = process_confirmation(payload)
                return result["outcome"], result["acknowledge"]
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=len(payloads)) as pool:
            return sorted(pool.map(deliver, payloads))

    def test_same_transaction_delivered_twice(self):
        """Both deliveries are acknowledged and the voucher is settled once"""
        payload = confirmation_payload("VCHKP7M2QX9A", trans_id="QK1")

        results = self.deliver_together([payload, payload])

        self.assertEqual(results, [("duplicate", True), ("settled", True)])
        self.assertEqual(Voucher.objects.filter(transaction_id="QK1").count(), 1)
        self.assertEqual(Customer.objects.get().total_purchases, 1)

    def test_race_for_last_voucher(self):
        """Two intents, one voucher: one settles and the other is out of stock"""
        first = self.add_intent("PAY0000000001")
        second = self.add_intent("PAY0000000002")

        results = self.deliver_together(
            [
                confirmation_payload(first.order_reference, trans_id="QK1"),
                confirmation_payload(second.order_reference, trans_id="QK2"),
            ]
        )

        self.assertEqual(results, [("out_of_stock", True), ("settled", True)])
        self.voucher.refresh_from_db()
        self.assertIn(self.voucher.transaction_id, ("QK1", "QK2"))
        self.assertEqual(
            sorted(Payment.objects.values_list("status", flat=True)),
            ["completed", "pending_voucher"],
        )
