"""
API views for the ISP billing console

Operator endpoints are scoped to the tenant resolved from X-API-Key
(staff users see every tenant). Payment-gateway webhooks answer with the
M-Pesa acknowledgment shape {"ResultCode", "ResultDesc"}.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone
from django.views.decorators.cache import never_cache
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import ParseError
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .catalog_sync import delete_package, push_package
from .exceptions import OutOfStock, VoucherNotFound
from .models import Package, Payment, Router, Voucher
from .permissions import IsTenantOperator
from .providers import get_provider
from .serializers import (
    CaptiveVoucherSerializer,
    CheckoutRequestSerializer,
    GenerateVouchersSerializer,
    PackageSerializer,
    PackageSyncSerializer,
    PaymentIntentSerializer,
    PurchaseIntentSerializer,
    ServiceControlSerializer,
    VerifyMpesaSerializer,
    VoucherSerializer,
)
from .settlement import (
    attach_checkout_request,
    create_purchase_intent,
    find_purchased_voucher,
    process_confirmation,
    record_stk_result,
)
from .voucher_pool import VoucherPoolError, cancel_voucher, resync_vouchers

logger = logging.getLogger(__name__)


def get_client_ip(request):
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR")


def _operator_routers(request):
    routers = Router.objects.select_related("tenant").filter(is_active=True)
    tenant = getattr(request, "tenant", None)
    if tenant is not None:
        routers = routers.filter(tenant=tenant)
    return routers


def _get_router(request, router_id):
    return _operator_routers(request).filter(pk=router_id).first()


def _router_not_found(router_id):
    return Response(
        {"success": False, "error": f"Router {router_id} not found"},
        status=status.HTTP_404_NOT_FOUND,
    )


def _webhook_payload(request):
    try:
        payload = request.data
    except ParseError:
        return None
    return payload if isinstance(payload, dict) else None


# =============================================================================
# PAYMENT GATEWAY WEBHOOKS
# =============================================================================


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def mpesa_confirmation(request):
    """
    C2B payment confirmation.

    ResultCode 0 tells the gateway to stop retrying (settled, duplicate,
    already settled, out of stock, amount mismatch). ResultCode 1 is returned
    for unknown references and malformed payloads; persistence failures also
    answer HTTP 500 so the delivery is retried.
    """
    payload = _webhook_payload(request)
    if payload is None:
        logger.error("M-Pesa confirmation with unreadable body")
        return Response({"ResultCode": 1, "ResultDesc": "Invalid payload"})

    result = process_confirmation(payload, source_ip=get_client_ip(request))
    http_status = (
        status.HTTP_500_INTERNAL_SERVER_ERROR if result["retryable"] else status.HTTP_200_OK
    )
    return Response(
        {
            "ResultCode": 0 if result["acknowledge"] else 1,
            "ResultDesc": result["message"],
        },
        status=http_status,
    )


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def mpesa_stk_callback(request):
    """STK push result; always acknowledged once recorded"""
    payload = _webhook_payload(request)
    if payload is None:
        return Response({"ResultCode": 1, "ResultDesc": "Invalid payload"})

    record_stk_result(payload, source_ip=get_client_ip(request))
    return Response({"ResultCode": 0, "ResultDesc": "Accepted"})


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def create_purchase(request):
    """
    Captive-portal purchase: returns the bill reference to pay against.

    POST /api/purchase/
    Body: { "router_id": 1, "package_name": "1hour-10ksh", "phone_number": "0712345678" }
    """
    serializer = PurchaseIntentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(
            {"success": False, "error": "Invalid purchase request", "errors": serializer.errors},
            status=status.HTTP_400_BAD_REQUEST,
        )

    data = serializer.validated_data
    router = Router.objects.filter(pk=data["router_id"], is_active=True).first()
    if router is None:
        return _router_not_found(data["router_id"])

    try:
        payment = create_purchase_intent(
            router,
            data["package_name"],
            data["phone_number"],
            mac_address=data.get("mac_address", ""),
            service_type=data["service_type"],
            checkout_request_id=data.get("checkout_request_id", ""),
        )
    except VoucherNotFound as e:
        return Response({"success": False, "error": str(e)}, status=status.HTTP_404_NOT_FOUND)
    except OutOfStock as e:
        return Response({"success": False, "error": str(e)}, status=status.HTTP_409_CONFLICT)

    return Response(
        {
            "success": True,
            "message": f"Pay {payment.amount} using reference {payment.order_reference}",
            "payment": PaymentIntentSerializer(payment).data,
        },
        status=status.HTTP_201_CREATED,
    )


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def purchase_checkout(request, order_reference):
    """
    Link the STK push sent for an intent to it.

    POST /api/purchase/<order_reference>/checkout/
    Body: { "checkout_request_id": "ws_CO_..." }
    """
    serializer = CheckoutRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    payment = Payment.objects.filter(order_reference=order_reference).first()
    if payment is None:
        return Response(
            {"success": False, "error": f"Purchase {order_reference} not found"},
            status=status.HTTP_404_NOT_FOUND,
        )

    if not attach_checkout_request(payment, serializer.validated_data["checkout_request_id"]):
        return Response(
            {"success": False, "error": f"Purchase {order_reference} is already {payment.status}"},
            status=status.HTTP_409_CONFLICT,
        )
    return Response({"success": True, "payment": PaymentIntentSerializer(payment).data})


# =============================================================================
# CAPTIVE PORTAL
# =============================================================================


def _payment_not_found():
    return Response(
        {
            "success": False,
            "status": "not_found",
            "error": "Payment request not found. Please start a new purchase.",
        },
        status=status.HTTP_404_NOT_FOUND,
    )


@never_cache
@api_view(["GET"])
@permission_classes([AllowAny])
def captive_payment_status(request):
    """
    Polled by the portal after an STK push.

    GET /api/captive/payment-status/?checkout_id=ws_CO_...  (or ?reference=PAY...)
    Optional router_id must match the intent's router.
    """
    checkout_id = request.query_params.get("checkout_id", "").strip()
    reference = request.query_params.get("reference", "").strip()
    if not checkout_id and not reference:
        return Response(
            {"success": False, "error": "checkout_id or reference is required"},
            status=status.HTTP_400_BAD_REQUEST,
        )

    payments = Payment.objects.select_related("voucher")
    if checkout_id:
        payments = payments.filter(checkout_request_id=checkout_id)
    else:
        payments = payments.filter(order_reference=reference)
    payment = payments.first()
    if payment is None:
        return _payment_not_found()

    router_id = request.query_params.get("router_id")
    if router_id and str(payment.router_id) != router_id:
        return _payment_not_found()

    body = {"success": True, "status": payment.status, "payment": PaymentIntentSerializer(payment).data}
    elapsed = int((timezone.now() - payment.created_at).total_seconds())

    if payment.status == "pending":
        if elapsed > timedelta(minutes=settings.STK_PAYMENT_TIMEOUT_MINUTES).total_seconds():
            body["status"] = "timeout"
            body["message"] = (
                "Payment request expired. If you were charged, use your M-Pesa "
                "transaction code to recover your voucher."
            )
        else:
            body["message"] = "Waiting for M-Pesa confirmation. Enter your PIN if prompted."
        body["elapsed_time"] = elapsed
    elif payment.status == "pending_voucher":
        body["message"] = "Payment received. Your voucher will be sent by SMS shortly."
    elif payment.status == "completed" and payment.voucher is not None:
        body["message"] = "Payment successful. You can now log in with your voucher code."
        body["voucher"] = CaptiveVoucherSerializer(payment.voucher).data
    elif payment.status == "failed":
        body["message"] = payment.failure_reason or "Payment was not successful. Please try again."
    else:
        body["message"] = f"Payment is {payment.status}"

    return Response(body)


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def captive_verify_mpesa(request):
    """
    Recover a purchased voucher from the M-Pesa transaction code.

    POST /api/captive/verify-mpesa/
    Body: { "transaction_code": "QK123ABC45", "router_id": 1, "phone_number": "0712345678" }
    """
    serializer = VerifyMpesaSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    router = Router.objects.filter(pk=data["router_id"], is_active=True).first()
    if router is None:
        return _router_not_found(data["router_id"])

    voucher, payment = find_purchased_voucher(
        router, data["transaction_code"], data["phone_number"]
    )

    if voucher is None:
        if payment is not None and payment.status == "pending_voucher":
            return Response(
                {
                    "success": True,
                    "valid": False,
                    "error_type": "voucher_pending",
                    "message": "Payment received. Your voucher will be sent by SMS shortly.",
                }
            )
        return Response(
            {
                "success": True,
                "valid": False,
                "error_type": "transaction_not_found",
                "message": "M-Pesa transaction code not recognized. Please check and try again.",
            }
        )

    if voucher.status not in ("assigned", "paid"):
        return Response(
            {
                "success": True,
                "valid": False,
                "error_type": f"voucher_{voucher.status}",
                "message": f"This voucher is {voucher.status}.",
            }
        )

    logger.info(f"Voucher {voucher.payment_reference} recovered by transaction code")
    return Response(
        {
            "success": True,
            "valid": True,
            "message": "Voucher verified successfully.",
            "voucher": CaptiveVoucherSerializer(voucher).data,
        }
    )


# =============================================================================
# PACKAGE CATALOG
# =============================================================================


@api_view(["GET"])
@permission_classes([IsTenantOperator])
def router_packages(request, router_id):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    packages = router.packages.all()
    service_type = request.query_params.get("service_type")
    if service_type:
        packages = packages.filter(service_type=service_type)

    return Response(
        {
            "success": True,
            "packages": PackageSerializer(packages, many=True).data,
            "total_count": packages.count(),
        }
    )


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def sync_router_packages(request, router_id):
    """
    Reconcile the package catalog with the router's profiles.
    An unreachable router surfaces as HTTP 502 with nothing written.
    """
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    serializer = PackageSyncSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    service_type = serializer.validated_data["service_type"]

    result = get_provider(router).sync_packages_from_router(service_type)
    packages = result.pop("packages")
    logger.info(
        f"Package sync on {router.name} ({service_type}): "
        f"+{result['added']} ~{result['updated']} -{result['removed']}"
    )
    return Response(
        {
            **result,
            "message": (
                f"Sync complete: {result['added']} added, {result['updated']} updated, "
                f"{result['removed']} missing from router"
            ),
            "packages": PackageSerializer(packages, many=True).data,
        }
    )


def _get_package(router, package_name, request):
    service_type = request.query_params.get("service_type", "hotspot")
    return Package.objects.filter(
        router=router, service_type=service_type, name=package_name
    ).first()


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def push_router_package(request, router_id, package_name):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    package = _get_package(router, package_name, request)
    if package is None:
        return Response(
            {"success": False, "error": f"Package {package_name} not found"},
            status=status.HTTP_404_NOT_FOUND,
        )

    result = push_package(package)
    if not result["success"]:
        return Response(result, status=status.HTTP_502_BAD_GATEWAY)

    package.refresh_from_db()
    return Response({**result, "package": PackageSerializer(package).data})


@api_view(["DELETE"])
@permission_classes([IsTenantOperator])
def delete_router_package(request, router_id, package_name):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    package = _get_package(router, package_name, request)
    if package is None:
        return Response(
            {"success": False, "error": f"Package {package_name} not found"},
            status=status.HTTP_404_NOT_FOUND,
        )

    deleted, message = delete_package(package)
    if not deleted:
        return Response({"success": False, "error": message}, status=status.HTTP_400_BAD_REQUEST)
    return Response({"success": True, "message": message})


# =============================================================================
# VOUCHER POOL
# =============================================================================


@api_view(["GET"])
@permission_classes([IsTenantOperator])
def router_vouchers(request, router_id):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    vouchers = Voucher.objects.filter(router=router)
    for param, field in (("status", "status"), ("package", "package_name"), ("batch_id", "batch_id")):
        value = request.query_params.get(param)
        if value:
            vouchers = vouchers.filter(**{field: value})

    return Response(
        {
            "success": True,
            "vouchers": VoucherSerializer(vouchers[:500], many=True).data,
            "total_count": vouchers.count(),
        }
    )


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def generate_router_vouchers(request, router_id):
    """
    Generate a voucher batch for one package.

    POST /api/routers/<id>/vouchers/generate/
    Body: { "quantity": 10, "packageName": "1hour-10ksh", "serviceType": "hotspot" }
    """
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    serializer = GenerateVouchersSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    generated_by = request.user.username if request.user.is_authenticated else router.tenant.slug
    try:
        result = get_provider(router).generate_vouchers_for_service(
            data["serviceType"],
            data["packageName"],
            data["quantity"],
            generated_by=generated_by,
            **serializer.to_options(),
        )
    except VoucherPoolError as e:
        return Response({"success": False, "error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

    vouchers = result.pop("vouchers")
    message = f"Generated {result['total']} vouchers"
    if result["sync_requested"]:
        message += f" ({result['synced_count']} synced, {result['failed_count']} failed)"
    return Response(
        {**result, "message": message, "vouchers": VoucherSerializer(vouchers, many=True).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def bulk_sync_router_vouchers(request, router_id):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    return Response(resync_vouchers(router))


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def cancel_router_voucher(request, router_id, voucher_id):
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    voucher = Voucher.objects.filter(router=router, pk=voucher_id).first()
    if voucher is None:
        return Response(
            {"success": False, "error": f"Voucher {voucher_id} not found"},
            status=status.HTTP_404_NOT_FOUND,
        )

    try:
        result = cancel_voucher(voucher)
    except VoucherPoolError as e:
        return Response({"success": False, "error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(
        {
            "success": True,
            "message": f"Voucher {voucher.code} cancelled",
            "router_deleted": result["router_deleted"],
            "voucher": VoucherSerializer(result["voucher"]).data,
        }
    )


# =============================================================================
# SERVICE CONTROL
# =============================================================================


@api_view(["POST"])
@permission_classes([IsTenantOperator])
def control_router_service(request, router_id, service_type):
    """
    POST /api/routers/<id>/services/<hotspot|pppoe>/
    Body: { "action": "restart|enable|disable|status", "server_name": "hotspot1" }
    """
    router = _get_router(request, router_id)
    if router is None:
        return _router_not_found(router_id)

    serializer = ServiceControlSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    result = get_provider(router).control_service(
        service_type, data["action"], data.get("server_name") or None
    )
    if result["success"]:
        return Response(result)

    if result.get("error_type") == "service_not_found":
        return Response(result, status=status.HTTP_404_NOT_FOUND)
    return Response(result, status=status.HTTP_502_BAD_GATEWAY)
