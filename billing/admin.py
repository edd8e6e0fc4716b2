"""
Django admin configuration for the ISP billing console with Jazzmin
"""

from django.contrib import admin, messages
from django.http import HttpResponse
from django.utils.html import format_html
import csv

from .catalog_sync import push_package
from .exceptions import ConnectivityError
from .models import (
    Tenant,
    Router,
    Package,
    Customer,
    Payment,
    Voucher,
    ServiceIdentifier,
    PaymentWebhook,
    OperatorAlert,
    SMSLog,
)
from .providers import get_provider
from .voucher_pool import VoucherPoolError, cancel_voucher

BADGE = '<span style="background: {}; color: white; padding: 2px 8px; border-radius: 4px;">{}</span>'


def badge(color, label):
    return format_html(BADGE, color, label)


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = [
        "business_name",
        "slug",
        "account_type",
        "commission_display",
        "is_active",
        "created_at",
    ]
    list_filter = ["account_type", "is_active"]
    search_fields = ["business_name", "slug", "business_phone"]
    readonly_fields = ["api_key", "created_at", "updated_at"]

    def commission_display(self, obj):
        return f"{obj.get_commission_rate():g}%"

    commission_display.short_description = "Commission"


@admin.register(Router)
class RouterAdmin(admin.ModelAdmin):
    """Manage MikroTik routers"""

    list_display = [
        "name",
        "tenant_name",
        "host",
        "status_badge",
        "provider",
        "last_seen",
        "is_active",
    ]
    list_filter = ["status", "provider", "is_active", "tenant"]
    search_fields = ["name", "host", "tenant__business_name"]
    readonly_fields = ["last_seen", "last_error", "created_at", "updated_at"]
    actions = ["sync_hotspot_packages"]

    fieldsets = (
        ("Router Info", {"fields": ("tenant", "name", "provider")}),
        ("Connection", {"fields": ("host", "port", "username", "password", "use_ssl")}),
        (
            "Status",
            {
                "fields": (
                    "status",
                    "last_seen",
                    "last_error",
                    "is_active",
                    "created_at",
                    "updated_at",
                )
            },
        ),
    )

    def tenant_name(self, obj):
        return obj.tenant.business_name

    tenant_name.short_description = "Tenant"

    def status_badge(self, obj):
        colors = {
            "online": "green",
            "offline": "red",
            "configuring": "orange",
            "error": "red",
        }
        return badge(colors.get(obj.status, "gray"), obj.status.upper())

    status_badge.short_description = "Status"

    def sync_hotspot_packages(self, request, queryset):
        for router in queryset:
            try:
                result = get_provider(router).sync_packages_from_router("hotspot")
            except ConnectivityError as e:
                self.message_user(request, f"{router.name}: {e}", messages.ERROR)
                continue
            self.message_user(
                request,
                f"{router.name}: {result['added']} added, {result['updated']} updated, "
                f"{result['removed']} missing from router",
            )

    sync_hotspot_packages.short_description = "Sync hotspot packages from router"


@admin.register(Package)
class PackageAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "router",
        "service_type",
        "price",
        "duration_minutes",
        "sync_badge",
        "last_synced",
        "is_active",
    ]
    list_filter = ["service_type", "sync_status", "is_active", "router"]
    search_fields = ["name", "display_name", "router__name"]
    readonly_fields = ["router_profile_id", "router_snapshot", "last_synced", "created_at", "updated_at"]
    actions = ["push_to_router"]

    def sync_badge(self, obj):
        colors = {
            "synced": "green",
            "drifted": "orange",
            "new_on_router": "blue",
            "not_on_router": "gray",
            "failed": "red",
        }
        return badge(colors.get(obj.sync_status, "gray"), obj.get_sync_status_display())

    sync_badge.short_description = "Sync"

    def push_to_router(self, request, queryset):
        for package in queryset.select_related("router"):
            result = push_package(package)
            level = messages.SUCCESS if result["success"] else messages.ERROR
            self.message_user(
                request, f"{package.name}: {result.get('message') or result.get('error')}", level
            )

    push_to_router.short_description = "Push selected packages to router"


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ["phone_display", "tenant", "total_purchases", "total_spent", "last_purchase_at"]
    list_filter = ["tenant"]
    search_fields = ["phone_number", "phone_hash"]
    readonly_fields = ["phone_hash", "created_at", "updated_at"]

    def phone_display(self, obj):
        return obj.phone_number or f"{obj.phone_hash[:12]}…"

    phone_display.short_description = "Phone"


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = [
        "order_reference",
        "tenant",
        "package_name",
        "amount",
        "status_badge",
        "transaction_id",
        "created_at",
        "completed_at",
    ]
    list_filter = ["status", "service_type", "tenant", "created_at"]
    search_fields = ["order_reference", "transaction_id", "phone_number", "checkout_request_id"]
    readonly_fields = ["created_at", "paid_at", "completed_at", "metadata"]

    def status_badge(self, obj):
        colors = {
            "completed": "green",
            "pending": "orange",
            "pending_voucher": "purple",
            "failed": "red",
            "cancelled": "gray",
        }
        return badge(colors.get(obj.status, "gray"), obj.get_status_display())

    status_badge.short_description = "Status"


@admin.register(Voucher)
class VoucherAdmin(admin.ModelAdmin):
    list_display = [
        "code",
        "payment_reference",
        "router",
        "package_name",
        "status_badge",
        "synced_badge",
        "batch_id",
        "created_at",
        "paid_at",
    ]
    list_filter = ["status", "service_type", "tenant", "router", "batch_id"]
    search_fields = ["code", "payment_reference", "transaction_id", "batch_id"]
    readonly_fields = [
        "code",
        "payment_reference",
        "transaction_id",
        "router_user_id",
        "router_sync_error",
        "synced_at",
        "paid_at",
        "commission",
        "expired_at",
        "expired_by",
        "created_at",
    ]
    ordering = ["-created_at"]
    actions = ["export_vouchers_csv", "cancel_selected"]

    def status_badge(self, obj):
        colors = {
            "active": "green",
            "assigned": "orange",
            "paid": "blue",
            "used": "purple",
            "expired": "gray",
            "cancelled": "red",
        }
        return badge(colors.get(obj.status, "gray"), obj.status.upper())

    status_badge.short_description = "Status"

    def synced_badge(self, obj):
        if obj.router_user_id:
            return badge("green", "ON ROUTER")
        return badge("gray", "DB ONLY")

    synced_badge.short_description = "Router"

    def export_vouchers_csv(self, request, queryset):  # noqa: ARG002
        """Export selected vouchers to CSV"""
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="vouchers.csv"'

        writer = csv.writer(response)
        writer.writerow(
            ["Router", "Package", "Code", "Reference", "Price", "Status", "Batch ID", "Created At"]
        )
        for voucher in queryset.select_related("router"):
            writer.writerow(
                [
                    voucher.router.name,
                    voucher.package_name,
                    voucher.code,
                    voucher.payment_reference,
                    voucher.price,
                    voucher.status,
                    voucher.batch_id,
                    voucher.created_at.strftime("%Y-%m-%d %H:%M"),
                ]
            )

        return response

    export_vouchers_csv.short_description = "Export selected vouchers to CSV"

    def cancel_selected(self, request, queryset):
        cancelled = 0
        for voucher in queryset.select_related("router"):
            try:
                cancel_voucher(voucher)
                cancelled += 1
            except VoucherPoolError as e:
                self.message_user(request, f"{voucher.code}: {e}", messages.WARNING)
        self.message_user(request, f"{cancelled} vouchers cancelled")

    cancel_selected.short_description = "Cancel selected unsold vouchers"


@admin.register(ServiceIdentifier)
class ServiceIdentifierAdmin(admin.ModelAdmin):
    list_display = ["router", "service_type", "name", "object_id", "discovered_at"]
    list_filter = ["service_type", "router"]


@admin.register(PaymentWebhook)
class PaymentWebhookAdmin(admin.ModelAdmin):
    list_display = [
        "received_at",
        "event_type",
        "bill_reference",
        "transaction_id",
        "amount",
        "processing_status",
        "outcome",
    ]
    list_filter = ["event_type", "processing_status", "outcome", "tenant"]
    search_fields = ["bill_reference", "transaction_id"]
    readonly_fields = [field.name for field in PaymentWebhook._meta.fields]


@admin.register(OperatorAlert)
class OperatorAlertAdmin(admin.ModelAdmin):
    list_display = ["created_at", "tenant", "router", "alert_type", "severity", "is_acknowledged"]
    list_filter = ["alert_type", "severity", "is_acknowledged", "tenant"]
    search_fields = ["message"]
    actions = ["acknowledge_selected"]

    def acknowledge_selected(self, request, queryset):
        for alert in queryset.filter(is_acknowledged=False):
            alert.acknowledge()
        self.message_user(request, "Selected alerts acknowledged")

    acknowledge_selected.short_description = "Acknowledge selected alerts"


@admin.register(SMSLog)
class SMSLogAdmin(admin.ModelAdmin):
    list_display = ["sent_at", "tenant", "phone_number", "sms_type", "success"]
    list_filter = ["sms_type", "success", "tenant"]
    search_fields = ["phone_number", "message"]
