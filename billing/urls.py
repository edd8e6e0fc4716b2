"""
URL routing for billing API
"""

from django.urls import path

from . import views

urlpatterns = [
    # Payment gateway
    path("webhooks/mpesa/confirmation/", views.mpesa_confirmation, name="mpesa_confirmation"),
    path("webhooks/mpesa/callback/", views.mpesa_stk_callback, name="mpesa_stk_callback"),
    path("purchase/", views.create_purchase, name="create_purchase"),
    path(
        "purchase/<str:order_reference>/checkout/",
        views.purchase_checkout,
        name="purchase_checkout",
    ),
    # Captive portal
    path(
        "captive/payment-status/",
        views.captive_payment_status,
        name="captive_payment_status",
    ),
    path("captive/verify-mpesa/", views.captive_verify_mpesa, name="captive_verify_mpesa"),
    # Package catalog
    path("routers/<int:router_id>/packages/", views.router_packages, name="router_packages"),
    path(
        "routers/<int:router_id>/packages/sync/",
        views.sync_router_packages,
        name="sync_router_packages",
    ),
    path(
        "routers/<int:router_id>/packages/<str:package_name>/push/",
        views.push_router_package,
        name="push_router_package",
    ),
    path(
        "routers/<int:router_id>/packages/<str:package_name>/",
        views.delete_router_package,
        name="delete_router_package",
    ),
    # Voucher pool
    path("routers/<int:router_id>/vouchers/", views.router_vouchers, name="router_vouchers"),
    path(
        "routers/<int:router_id>/vouchers/generate/",
        views.generate_router_vouchers,
        name="generate_router_vouchers",
    ),
    path(
        "routers/<int:router_id>/vouchers/bulk-sync/",
        views.bulk_sync_router_vouchers,
        name="bulk_sync_router_vouchers",
    ),
    path(
        "routers/<int:router_id>/vouchers/<int:voucher_id>/cancel/",
        views.cancel_router_voucher,
        name="cancel_router_voucher",
    ),
    # Service control
    path(
        "routers/<int:router_id>/services/<str:service_type>/",
        views.control_router_service,
        name="control_router_service",
    ),
]
