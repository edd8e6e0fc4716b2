"""
Voucher assignment and settlement for M-Pesa payment confirmations

A confirmation either references a purchase intent (Payment.order_reference,
the STK flow) or a voucher's public payment reference (manual paybill).
Vouchers leave the pool only through a conditional UPDATE on
status="active", so concurrent deliveries can never claim the same unit,
and Voucher.transaction_id is unique so one transaction settles at most
one voucher.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .exceptions import (
    AlreadySettledDifferently,
    AmountMismatch,
    DuplicateTransaction,
    OutOfStock,
    SettlementError,
    VoucherNotFound,
)
from .models import Customer, Payment, PaymentWebhook, Voucher, normalize_msisdn
from .nextsms import (
    notify_fulfilment_delayed,
    notify_voucher_purchased,
    raise_operator_alert,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("TransID", "TransAmount", "BillRefNumber")


class PaymentConfirmation:
    """Normalized C2B confirmation payload"""

    def __init__(self, transaction_id, amount, msisdn, bill_reference, paid_at=None):
        self.transaction_id = transaction_id
        self.amount = amount
        self.msisdn = msisdn
        self.bill_reference = bill_reference
        self.paid_at = paid_at or timezone.now()

    def __repr__(self):
        return f"<PaymentConfirmation {self.transaction_id} {self.bill_reference} {self.amount}>"

    @classmethod
    def from_payload(cls, payload):
        missing = [field for field in REQUIRED_FIELDS if not payload.get(field)]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        try:
            amount = Decimal(str(payload["TransAmount"])).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid TransAmount: {payload['TransAmount']!r}")

        return cls(
            transaction_id=str(payload["TransID"]).strip(),
            amount=amount,
            msisdn=str(payload.get("MSISDN") or "").strip(),
            bill_reference=str(payload["BillRefNumber"]).strip(),
            paid_at=parse_transaction_time(payload.get("TransTime")),
        )


def parse_transaction_time(value):
    """M-Pesa TransTime is local time as YYYYMMDDHHMMSS"""
    if not value:
        return timezone.now()
    try:
        naive = datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except ValueError:
        logger.warning(f"Unparseable TransTime {value!r}, using receipt time")
        return timezone.now()
    return timezone.make_aware(naive, timezone.get_current_timezone())


# -----------------------------------------------------------------------------
# Pool claim
# -----------------------------------------------------------------------------


def claim_voucher(
    router_id, package_name, transaction_id, payer_phone, amount, paid_at, service_type="hotspot"
):
    """
    Atomically move one active voucher for router+service+package to "assigned".

    Each attempt is a compare-and-swap on status; losing a race just moves
    on to the next candidate. Returns the claimed Voucher, or None when the
    pool is empty.
    """
    now = timezone.now()
    while True:
        candidate = (
            Voucher.objects.filter(
                router_id=router_id,
                service_type=service_type,
                package_name=package_name,
                status="active",
            )
            .filter(
                Q(activation_expires_at__isnull=True)
                | Q(activation_expires_at__gt=now)
            )
            .order_by("created_at", "pk")
            .values_list("pk", flat=True)
            .first()
        )
        if candidate is None:
            return None

        try:
            with transaction.atomic():
                claimed = Voucher.objects.filter(pk=candidate, status="active").update(
                    status="assigned",
                    transaction_id=transaction_id,
                    payer_phone=payer_phone,
                    paid_amount=amount,
                    paid_at=paid_at,
                    payment_method="mpesa",
                    updated_at=now,
                )
        except IntegrityError:
            raise DuplicateTransaction(
                f"Transaction {transaction_id} already claimed a voucher",
                transaction_id=transaction_id,
            )

        if claimed:
            logger.info(f"Claimed voucher {candidate} for transaction {transaction_id}")
            return Voucher.objects.get(pk=candidate)

        logger.info(f"Lost claim race on voucher {candidate}, retrying")


# -----------------------------------------------------------------------------
# Settlement helpers
# -----------------------------------------------------------------------------


def calculate_commission(tenant, amount):
    rate = Decimal(str(tenant.get_commission_rate()))
    return (amount * rate / Decimal("100")).quantize(Decimal("0.01"))


def upsert_customer(tenant, msisdn, amount, paid_at, fallback_phone=""):
    """Create or update the buyer, keyed by hashed phone"""
    phone_hash, phone_number = normalize_msisdn(msisdn or fallback_phone)
    phone_number = phone_number or fallback_phone

    try:
        with transaction.atomic():
            customer, _ = Customer.objects.get_or_create(
                tenant=tenant,
                phone_hash=phone_hash,
                defaults={"phone_number": phone_number},
            )
    except IntegrityError:
        customer = Customer.objects.get(tenant=tenant, phone_hash=phone_hash)

    updates = {
        "total_purchases": F("total_purchases") + 1,
        "total_spent": F("total_spent") + amount,
        "last_purchase_at": paid_at,
    }
    if phone_number and not customer.phone_number:
        updates["phone_number"] = phone_number
    Customer.objects.filter(pk=customer.pk).update(**updates)
    customer.refresh_from_db()
    return customer


def finalize_voucher(voucher, confirmation, fallback_phone=""):
    """Commission, customer link, purchase-anchored expiry, status "paid" """
    customer = upsert_customer(
        voucher.tenant,
        confirmation.msisdn,
        confirmation.amount,
        confirmation.paid_at,
        fallback_phone=fallback_phone,
    )

    voucher.customer = customer
    voucher.commission = calculate_commission(voucher.tenant, confirmation.amount)
    if voucher.timed_on_purchase and voucher.duration_minutes:
        voucher.purchase_expires_at = confirmation.paid_at + timedelta(
            minutes=voucher.duration_minutes
        )
    voucher.status = "paid"
    voucher.save(
        update_fields=[
            "customer",
            "commission",
            "purchase_expires_at",
            "status",
            "updated_at",
        ]
    )
    logger.info(
        f"Voucher {voucher.payment_reference} paid by {confirmation.transaction_id}, "
        f"commission {voucher.commission}"
    )
    return voucher


# -----------------------------------------------------------------------------
# Settlement paths
# -----------------------------------------------------------------------------


def settle_intent(payment, confirmation):
    """
    STK path: claim a voucher from the pool for the intent's router+package.

    Raises DuplicateTransaction / AlreadySettledDifferently for re-deliveries
    and OutOfStock (after recording it) when the pool is empty.
    """
    tid = confirmation.transaction_id

    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)

        if payment.transaction_id == tid:
            raise DuplicateTransaction(
                f"Transaction {tid} already processed", payment=payment
            )
        if payment.transaction_id:
            raise AlreadySettledDifferently(
                f"Intent {payment.order_reference} already paid by {payment.transaction_id}",
                payment=payment,
            )

        payment.transaction_id = tid
        payment.paid_amount = confirmation.amount
        payment.paid_at = confirmation.paid_at

        voucher = claim_voucher(
            payment.router_id,
            payment.package_name,
            tid,
            confirmation.msisdn or payment.phone_number,
            confirmation.amount,
            confirmation.paid_at,
            service_type=payment.service_type,
        )

        if voucher is None:
            payment.status = "pending_voucher"
            payment.metadata = {
                **(payment.metadata or {}),
                "out_of_stock": True,
                "reason": f"No active vouchers for {payment.package_name}",
            }
            payment.save(
                update_fields=["transaction_id", "paid_amount", "paid_at", "status", "metadata"]
            )
        else:
            voucher = finalize_voucher(
                voucher, confirmation, fallback_phone=payment.phone_number
            )
            voucher.device_mac = payment.mac_address
            voucher.save(update_fields=["device_mac", "updated_at"])
            payment.customer = voucher.customer
            payment.voucher = voucher
            payment.status = "completed"
            payment.completed_at = timezone.now()
            payment.save(
                update_fields=[
                    "transaction_id",
                    "paid_amount",
                    "paid_at",
                    "customer",
                    "voucher",
                    "status",
                    "completed_at",
                ]
            )

    if voucher is None:
        logger.warning(
            f"Out of stock: {payment.package_name} on router {payment.router_id}, "
            f"payment {payment.order_reference} awaiting voucher"
        )
        raise_operator_alert(
            payment.tenant,
            "out_of_stock",
            f"Payment {payment.order_reference} ({tid}) received but no "
            f"{payment.package_name} vouchers are left on {payment.router.name}",
            router=payment.router,
            severity="critical",
            payment=payment.order_reference,
            package=payment.package_name,
        )
        notify_fulfilment_delayed(payment)
        raise OutOfStock(
            f"Payment received. Voucher for {payment.package_name} will be sent shortly.",
            payment=payment,
        )

    return payment, voucher


def settle_by_reference(confirmation):
    """
    Manual path: BillRefNumber is a voucher's public payment reference and
    the paid amount must match its price.
    """
    tid = confirmation.transaction_id
    reference = confirmation.bill_reference.upper()

    with transaction.atomic():
        try:
            voucher = Voucher.objects.select_for_update().get(payment_reference=reference)
        except Voucher.DoesNotExist:
            raise VoucherNotFound(f"No voucher found for reference: {reference}")

        if voucher.transaction_id == tid:
            raise DuplicateTransaction(f"Transaction {tid} already processed", voucher=voucher)
        if voucher.transaction_id:
            raise AlreadySettledDifferently(
                f"Voucher {reference} already purchased", voucher=voucher
            )
        if voucher.status != "active":
            raise VoucherNotFound(
                f"Voucher {reference} is {voucher.status}", voucher=voucher
            )

        tolerance = Decimal(str(settings.AMOUNT_TOLERANCE))
        if abs(confirmation.amount - voucher.price) > tolerance:
            raise AmountMismatch(voucher.price, confirmation.amount, voucher=voucher)

        try:
            with transaction.atomic():
                claimed = Voucher.objects.filter(
                    pk=voucher.pk, status="active", transaction_id__isnull=True
                ).update(
                    status="assigned",
                    transaction_id=tid,
                    payer_phone=confirmation.msisdn,
                    paid_amount=confirmation.amount,
                    paid_at=confirmation.paid_at,
                    payment_method="mpesa",
                    updated_at=timezone.now(),
                )
        except IntegrityError:
            raise DuplicateTransaction(
                f"Transaction {tid} already claimed a voucher", voucher=voucher
            )

        voucher.refresh_from_db()
        if not claimed:
            if voucher.transaction_id == tid:
                raise DuplicateTransaction(f"Transaction {tid} already processed", voucher=voucher)
            raise AlreadySettledDifferently(
                f"Voucher {reference} already purchased", voucher=voucher
            )

        voucher = finalize_voucher(voucher, confirmation)

    return None, voucher


def settle(confirmation):
    """
    Route a confirmation to the intent or manual path.
    Returns (payment_or_None, voucher); raises SettlementError subclasses.
    """
    already = Voucher.objects.filter(transaction_id=confirmation.transaction_id).first()
    if already is not None:
        raise DuplicateTransaction(
            f"Transaction {confirmation.transaction_id} already processed", voucher=already
        )

    payment = (
        Payment.objects.select_related("router", "tenant")
        .filter(order_reference=confirmation.bill_reference)
        .first()
    )
    if payment is not None:
        return settle_intent(payment, confirmation)
    return settle_by_reference(confirmation)


def _log_context(error):
    return error.context.get("payment"), error.context.get("voucher")


def process_confirmation(payload, source_ip=None):
    """
    Handle one confirmation delivery end to end and log it.

    Returns {"acknowledge": bool, "outcome": str, "message": str,
    "retryable": bool, "voucher", "payment"}. acknowledge=True means the
    gateway must not retry; it is False only for unknown references,
    malformed payloads and persistence failures.
    """
    try:
        logged_amount = Decimal(str(payload.get("TransAmount"))).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError):
        logged_amount = None

    webhook_log = PaymentWebhook.objects.create(
        event_type="C2B_CONFIRMATION",
        bill_reference=str(payload.get("BillRefNumber") or "UNKNOWN")[:100],
        transaction_id=str(payload.get("TransID") or "")[:100],
        msisdn=str(payload.get("MSISDN") or "")[:64],
        amount=logged_amount,
        raw_payload=payload,
        source_ip=source_ip,
    )

    try:
        confirmation = PaymentConfirmation.from_payload(payload)
    except ValueError as e:
        logger.error(f"Rejected malformed confirmation: {e}")
        webhook_log.mark_failed("invalid", str(e))
        return _result(False, "invalid", str(e))

    logger.info(f"Confirmation received: {confirmation!r}")

    try:
        payment, voucher = settle(confirmation)

    except SettlementError as e:
        payment, voucher = _log_context(e)
        if payment is not None and webhook_log.tenant_id is None:
            webhook_log.tenant_id = payment.tenant_id
        if voucher is not None and webhook_log.tenant_id is None:
            webhook_log.tenant_id = voucher.tenant_id

        if isinstance(e, (DuplicateTransaction, AlreadySettledDifferently)):
            logger.info(f"{e.outcome}: {e}")
            webhook_log.payment = payment
            webhook_log.voucher = voucher
            webhook_log.mark_ignored(e.outcome, str(e))
        elif isinstance(e, OutOfStock):
            webhook_log.mark_processed(e.outcome, payment=payment)
        else:
            logger.warning(f"Settlement rejected ({e.outcome}): {e}")
            webhook_log.voucher = voucher
            webhook_log.mark_failed(e.outcome, str(e))
        return _result(e.acknowledge, e.outcome, str(e), payment=payment, voucher=voucher)

    except DatabaseError as e:
        logger.exception(f"Persistence failure settling {confirmation.transaction_id}")
        try:
            webhook_log.mark_failed("persistence_error", str(e))
        except DatabaseError:
            logger.error(f"Could not record failure for {confirmation.transaction_id}")
        return _result(
            False, "persistence_error", "Unable to process payment. Please contact support.",
            retryable=True,
        )

    webhook_log.tenant_id = voucher.tenant_id
    webhook_log.mark_processed("settled", payment=payment, voucher=voucher)
    notify_voucher_purchased(voucher)

    return _result(
        True, "settled", "Payment processed successfully", payment=payment, voucher=voucher
    )


def _result(acknowledge, outcome, message, payment=None, voucher=None, retryable=False):
    return {
        "acknowledge": acknowledge,
        "outcome": outcome,
        "message": message,
        "retryable": retryable,
        "payment": payment,
        "voucher": voucher,
    }


# -----------------------------------------------------------------------------
# Purchase intents and STK results
# -----------------------------------------------------------------------------


def create_purchase_intent(
    router, package_name, phone_number, mac_address="", service_type="hotspot", checkout_request_id=""
):
    """
    Record a captive-portal purchase before the STK push is sent.
    Refuses when the package has no stock so no money is taken for nothing.
    """
    package = router.packages.filter(
        service_type=service_type, name=package_name, is_active=True
    ).first()
    if package is None:
        raise VoucherNotFound(f"Package {package_name} is not sold on {router.name}")

    in_stock = Voucher.objects.filter(
        router=router, service_type=service_type, package_name=package_name, status="active"
    ).exists()
    if not in_stock:
        raise OutOfStock(f"{package.display_name or package_name} is sold out")

    _, plain_phone = normalize_msisdn(phone_number)
    while True:
        reference = Payment.generate_order_reference()
        if not Payment.objects.filter(order_reference=reference).exists():
            break

    payment = Payment.objects.create(
        tenant=router.tenant,
        router=router,
        package_name=package_name,
        service_type=service_type,
        order_reference=reference,
        checkout_request_id=checkout_request_id or "",
        phone_number=plain_phone or phone_number,
        mac_address=mac_address or "",
        amount=package.price,
    )
    logger.info(f"Purchase intent {reference} for {package_name} on {router.name}")
    return payment


def attach_checkout_request(payment, checkout_request_id):
    """
    Remember the gateway's CheckoutRequestID once the STK push is sent,
    so the STK result callback can find the intent.
    """
    if payment.status != "pending":
        return False
    payment.checkout_request_id = checkout_request_id
    payment.save(update_fields=["checkout_request_id"])
    logger.info(f"STK push {checkout_request_id} sent for {payment.order_reference}")
    return True


def record_stk_result(payload, source_ip=None):
    """
    STK push result callback. A non-zero ResultCode means the customer
    never paid, so the intent is failed; success is informational because
    the C2B confirmation settles the voucher.
    """
    callback = (payload.get("Body") or {}).get("stkCallback") or {}
    checkout_id = callback.get("CheckoutRequestID") or ""
    result_code = callback.get("ResultCode")
    result_desc = callback.get("ResultDesc") or ""

    webhook_log = PaymentWebhook.objects.create(
        event_type="STK_CALLBACK",
        bill_reference=checkout_id or "UNKNOWN",
        raw_payload=payload,
        source_ip=source_ip,
    )

    payment = Payment.objects.filter(checkout_request_id=checkout_id).first() if checkout_id else None
    if payment is None:
        webhook_log.mark_ignored("unknown_checkout", f"No intent for checkout {checkout_id}")
        return False

    webhook_log.tenant_id = payment.tenant_id
    if str(result_code) != "0":
        if payment.status == "pending":
            payment.mark_failed(result_desc or f"STK result {result_code}")
            logger.info(f"STK push failed for {payment.order_reference}: {result_desc}")
        webhook_log.mark_processed("stk_failed", payment=payment)
        return True

    webhook_log.mark_processed("stk_accepted", payment=payment)
    return True


# -----------------------------------------------------------------------------
# Deferred fulfilment
# -----------------------------------------------------------------------------


def fulfil_pending_payment(payment):
    """
    Retry the pool claim for a paid intent that hit an empty pool.
    Returns the voucher, or None if still out of stock.
    """
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        if payment.status != "pending_voucher" or not payment.transaction_id:
            return payment.voucher

        voucher = claim_voucher(
            payment.router_id,
            payment.package_name,
            payment.transaction_id,
            payment.phone_number,
            payment.paid_amount or payment.amount,
            payment.paid_at or timezone.now(),
            service_type=payment.service_type,
        )
        if voucher is None:
            return None

        confirmation = PaymentConfirmation(
            transaction_id=payment.transaction_id,
            amount=payment.paid_amount or payment.amount,
            msisdn=payment.phone_number,
            bill_reference=payment.order_reference,
            paid_at=payment.paid_at,
        )
        voucher = finalize_voucher(voucher, confirmation, fallback_phone=payment.phone_number)
        payment.customer = voucher.customer
        payment.mark_completed(voucher)

    logger.info(f"Fulfilled pending payment {payment.order_reference} with {voucher.payment_reference}")
    notify_voucher_purchased(voucher)
    return voucher


# -----------------------------------------------------------------------------
# Captive-portal lookups
# -----------------------------------------------------------------------------


def find_purchased_voucher(router, transaction_id, phone_number):
    """
    Voucher bought with an M-Pesa transaction on this router, for a buyer
    who lost the SMS. The phone must match the payer (by hash, since the
    gateway may only send a digest). Returns (voucher, payment); either may
    be None.
    """
    transaction_id = transaction_id.strip().upper()
    phone_hash, _ = normalize_msisdn(phone_number)

    voucher = (
        Voucher.objects.select_related("customer")
        .filter(router=router, transaction_id=transaction_id)
        .first()
    )
    if voucher is not None:
        payer_hash = voucher.customer.phone_hash if voucher.customer else None
        if payer_hash != phone_hash:
            logger.warning(f"Voucher lookup for {transaction_id} with a different phone")
            return None, None
        return voucher, voucher.payments.first()

    payment = Payment.objects.filter(router=router, transaction_id=transaction_id).first()
    if payment is not None and normalize_msisdn(payment.phone_number)[0] != phone_hash:
        return None, None
    return None, payment
