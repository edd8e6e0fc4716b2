"""
Serializers for API requests and responses
"""

from django.conf import settings
from rest_framework import serializers

from .models import Package, Payment, Voucher

SERVICE_TYPES = [("hotspot", "Hotspot"), ("pppoe", "PPPoE")]


class PackageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Package
        fields = [
            "id",
            "service_type",
            "name",
            "display_name",
            "price",
            "duration_minutes",
            "idle_timeout_minutes",
            "upload_kbps",
            "download_kbps",
            "data_limit_mb",
            "timed_on_purchase",
            "router_profile_id",
            "sync_status",
            "last_synced",
            "is_active",
        ]
        read_only_fields = fields


class VoucherSerializer(serializers.ModelSerializer):
    """Operator view of a voucher; the code is included for printing"""

    class Meta:
        model = Voucher
        fields = [
            "id",
            "code",
            "payment_reference",
            "status",
            "package_name",
            "service_type",
            "price",
            "duration_minutes",
            "router_user_id",
            "router_sync_error",
            "synced_at",
            "batch_id",
            "activation_expires_at",
            "purchase_expires_at",
            "transaction_id",
            "paid_amount",
            "commission",
            "paid_at",
            "expired_at",
            "expired_by",
            "created_at",
        ]
        read_only_fields = fields


class PaymentIntentSerializer(serializers.ModelSerializer):
    """What the buyer sees before paying; never carries a voucher code"""

    class Meta:
        model = Payment
        fields = [
            "order_reference",
            "package_name",
            "service_type",
            "amount",
            "phone_number",
            "status",
            "created_at",
        ]
        read_only_fields = fields


class PackageSyncSerializer(serializers.Serializer):
    service_type = serializers.ChoiceField(choices=SERVICE_TYPES, default="hotspot")


class GenerateVouchersSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)
    packageName = serializers.CharField(max_length=100)
    serviceType = serializers.ChoiceField(choices=SERVICE_TYPES, default="hotspot")
    autoExpire = serializers.BooleanField(default=True)
    expiryDays = serializers.IntegerField(min_value=1, required=False)
    usageTimedOnPurchase = serializers.BooleanField(required=False, allow_null=True)
    syncToRouter = serializers.BooleanField(default=True)

    def validate_quantity(self, value):
        if value > settings.VOUCHER_MAX_BATCH:
            raise serializers.ValidationError(
                f"At most {settings.VOUCHER_MAX_BATCH} vouchers per batch"
            )
        return value

    def to_options(self):
        """Keyword arguments for generate_vouchers()"""
        data = self.validated_data
        return {
            "auto_expire": data["autoExpire"],
            "expiry_days": data.get("expiryDays"),
            "usage_timed_on_purchase": data.get("usageTimedOnPurchase"),
            "sync_to_router": data["syncToRouter"],
        }


class ServiceControlSerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=["restart", "enable", "disable", "status"])
    server_name = serializers.CharField(max_length=100, required=False, allow_blank=True)


class PurchaseIntentSerializer(serializers.Serializer):
    router_id = serializers.IntegerField()
    package_name = serializers.CharField(max_length=100)
    phone_number = serializers.CharField(max_length=20)
    mac_address = serializers.CharField(max_length=17, required=False, allow_blank=True)
    service_type = serializers.ChoiceField(choices=SERVICE_TYPES, default="hotspot")
    checkout_request_id = serializers.CharField(max_length=100, required=False, allow_blank=True)

    def validate_phone_number(self, value):
        digits = "".join(ch for ch in value if ch.isdigit())
        if len(digits) < 9:
            raise serializers.ValidationError(f"Invalid phone number: {value}")
        return value.strip()


class CheckoutRequestSerializer(serializers.Serializer):
    checkout_request_id = serializers.CharField(max_length=100)


class CaptiveVoucherSerializer(serializers.ModelSerializer):
    """Voucher as shown to the buyer once paid, ready for hotspot login"""

    class Meta:
        model = Voucher
        fields = [
            "code",
            "package_name",
            "service_type",
            "duration_minutes",
            "upload_kbps",
            "download_kbps",
            "status",
            "paid_at",
            "purchase_expires_at",
        ]
        read_only_fields = fields


class VerifyMpesaSerializer(serializers.Serializer):
    transaction_code = serializers.RegexField(r"^\s*[A-Za-z0-9]{8,12}\s*$", max_length=20)
    router_id = serializers.IntegerField()
    phone_number = serializers.CharField(max_length=64)

    def validate_transaction_code(self, value):
        return value.strip().upper()
