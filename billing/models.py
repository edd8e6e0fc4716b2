"""
Database models for the ISP reseller billing console
Multi-tenant catalog, voucher pool and payment settlement
"""

from django.db import models
from django.utils import timezone
from django.conf import settings
import hashlib
import secrets


# =============================================================================
# TENANTS AND ROUTERS
# =============================================================================


class Tenant(models.Model):
    """
    Tenant model - an ISP reseller account
    Each tenant owns routers, packages, vouchers and payments
    """

    ACCOUNT_TYPE_CHOICES = [
        ("homeowner", "Homeowner"),
        ("personal", "Personal"),
        ("isp", "ISP"),
        ("enterprise", "Enterprise"),
    ]

    slug = models.SlugField(max_length=50, unique=True, db_index=True)
    business_name = models.CharField(max_length=200)
    business_phone = models.CharField(max_length=20, blank=True)
    account_type = models.CharField(
        max_length=20, choices=ACCOUNT_TYPE_CHOICES, default="personal"
    )
    # Percent; overrides COMMISSION_RATES for this account when set
    commission_rate = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True
    )

    api_key = models.CharField(max_length=64, unique=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.business_name} ({self.slug})"

    def save(self, *args, **kwargs):
        if not self.api_key:
            self.api_key = secrets.token_hex(32)
        super().save(*args, **kwargs)

    def get_commission_rate(self):
        """Commission percent taken by the platform on this tenant's sales"""
        if self.commission_rate is not None:
            return float(self.commission_rate)
        return float(
            settings.COMMISSION_RATES.get(
                self.account_type, settings.DEFAULT_COMMISSION_RATE
            )
        )


class Router(models.Model):
    """
    Router managed through its REST API
    Each tenant can have multiple routers
    """

    STATUS_CHOICES = [
        ("online", "Online"),
        ("offline", "Offline"),
        ("configuring", "Configuring"),
        ("error", "Error"),
    ]

    PROVIDER_CHOICES = [
        ("mikrotik", "MikroTik RouterOS"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="routers")
    name = models.CharField(max_length=100)
    provider = models.CharField(
        max_length=20, choices=PROVIDER_CHOICES, default="mikrotik"
    )

    # Connection settings (REST API over HTTP/HTTPS)
    host = models.CharField(max_length=255)  # IP or hostname
    port = models.IntegerField(default=80)
    username = models.CharField(max_length=100)
    password = models.CharField(max_length=255)
    use_ssl = models.BooleanField(default=False)

    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default="configuring"
    )
    last_seen = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["tenant", "name"]
        unique_together = ["tenant", "name"]

    def __str__(self):
        return f"{self.tenant.business_name} - {self.name} ({self.host})"

    @property
    def is_reachable(self):
        return self.is_active and self.status == "online"

    def record_contact(self):
        """Router answered a request"""
        self.status = "online"
        self.last_seen = timezone.now()
        self.last_error = ""
        self.save(update_fields=["status", "last_seen", "last_error", "updated_at"])

    def record_failure(self, error):
        """Router could not be reached or rejected the request"""
        self.status = "error" if getattr(error, "error_type", "") == "authentication_failed" else "offline"
        self.last_error = str(error)[:1000]
        self.save(update_fields=["status", "last_error", "updated_at"])


# =============================================================================
# PACKAGE CATALOG
# =============================================================================


class Package(models.Model):
    """
    Sellable service tier, mirrored on the router as a user/PPP profile.
    The name is the router-side profile name.
    """

    SERVICE_TYPE_CHOICES = [
        ("hotspot", "Hotspot"),
        ("pppoe", "PPPoE"),
    ]

    SYNC_STATUS_CHOICES = [
        ("synced", "Synced"),
        ("drifted", "Drifted"),
        ("new_on_router", "New on Router"),
        ("not_on_router", "Not on Router"),
        ("failed", "Failed"),
    ]

    router = models.ForeignKey(Router, on_delete=models.CASCADE, related_name="packages")
    service_type = models.CharField(
        max_length=10, choices=SERVICE_TYPE_CHOICES, default="hotspot"
    )
    name = models.CharField(max_length=100)
    display_name = models.CharField(max_length=150, blank=True)
    price = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    # 0 means unlimited (typical for PPPoE plans)
    duration_minutes = models.PositiveIntegerField(default=0)
    idle_timeout_minutes = models.PositiveIntegerField(default=0)
    upload_kbps = models.PositiveIntegerField(default=0)
    download_kbps = models.PositiveIntegerField(default=0)
    data_limit_mb = models.PositiveIntegerField(default=0)

    # Expiry policy copied onto vouchers at generation time
    timed_on_purchase = models.BooleanField(
        default=False,
        help_text="Usage deadline starts at payment time (payment + duration)",
    )

    router_profile_id = models.CharField(max_length=50, blank=True, null=True)
    sync_status = models.CharField(
        max_length=20, choices=SYNC_STATUS_CHOICES, default="not_on_router"
    )
    # Last fields observed on the router (rate-limit, session-timeout, ...)
    router_snapshot = models.JSONField(default=dict, blank=True)
    last_synced = models.DateTimeField(null=True, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["router", "service_type", "price", "name"]
        unique_together = ["router", "service_type", "name"]

    def __str__(self):
        return f"{self.name} ({self.service_type}) - {self.sync_status}"


# =============================================================================
# CUSTOMERS AND PURCHASE INTENTS
# =============================================================================


def hash_phone_number(phone_number):
    """One-way identity for a phone number (the gateway may only send this)"""
    return hashlib.sha256(str(phone_number).strip().encode()).hexdigest()


def normalize_msisdn(msisdn):
    """
    Return (phone_hash, plaintext_phone_or_blank) for a gateway MSISDN.

    Newer M-Pesa payloads carry a SHA-256 hex digest instead of the number.
    """
    value = str(msisdn or "").strip()
    if len(value) == 64 and all(c in "0123456789abcdefABCDEF" for c in value):
        return value.lower(), ""
    digits = "".join(c for c in value if c.isdigit())
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    return hash_phone_number(digits), digits


class Customer(models.Model):
    """
    End customer of a tenant, identified by a hashed phone number
    """

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="customers")
    phone_hash = models.CharField(max_length=64, db_index=True)
    phone_number = models.CharField(max_length=20, blank=True)
    total_purchases = models.PositiveIntegerField(default=0)
    total_spent = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    last_purchase_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-last_purchase_at"]
        unique_together = ["tenant", "phone_hash"]

    def __str__(self):
        return self.phone_number or f"{self.phone_hash[:12]}..."


class Payment(models.Model):
    """
    Purchase intent created before the STK push; the bill reference sent to
    the gateway is order_reference. Settlement links it to the claimed voucher.
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("pending_voucher", "Paid - Awaiting Voucher"),
        ("failed", "Failed"),
        ("cancelled", "Cancelled"),
    ]

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="payments")
    router = models.ForeignKey(Router, on_delete=models.CASCADE, related_name="payments")
    package_name = models.CharField(max_length=100)
    service_type = models.CharField(max_length=10, default="hotspot")
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    voucher = models.ForeignKey(
        "Voucher",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )

    order_reference = models.CharField(max_length=100, unique=True)
    checkout_request_id = models.CharField(max_length=100, blank=True, db_index=True)
    phone_number = models.CharField(max_length=20)
    mac_address = models.CharField(max_length=17, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    transaction_id = models.CharField(max_length=100, blank=True, null=True)
    paid_amount = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    failure_reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="payment_status_created_idx"),
        ]

    def __str__(self):
        return f"{self.order_reference} - {self.phone_number} - {self.status}"

    @staticmethod
    def generate_order_reference():
        return f"PAY{secrets.token_hex(5).upper()}"

    def mark_completed(self, voucher):
        """Link the claimed voucher and close the intent"""
        self.status = "completed"
        self.voucher = voucher
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "voucher", "customer", "completed_at"])

    def mark_pending_voucher(self, reason):
        """Money received but no voucher in stock"""
        self.status = "pending_voucher"
        self.metadata = {**(self.metadata or {}), "out_of_stock": True, "reason": reason}
        self.save(update_fields=["status", "metadata"])

    def mark_failed(self, reason=""):
        self.status = "failed"
        self.failure_reason = reason
        self.save(update_fields=["status", "failure_reason"])


# =============================================================================
# VOUCHERS
# =============================================================================


class Voucher(models.Model):
    """
    Access credential sold as a unit of network access.

    The code is also the router-side password, so customers are given the
    separate payment_reference for paying; the code is only revealed after
    settlement. Package values are snapshotted at generation time.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("assigned", "Assigned"),
        ("paid", "Paid"),
        ("used", "Used"),
        ("expired", "Expired"),
        ("cancelled", "Cancelled"),
    ]

    # Unambiguous alphabet: no 0/O/I/1
    CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

    tenant = models.ForeignKey(Tenant, on_delete=models.CASCADE, related_name="vouchers")
    router = models.ForeignKey(Router, on_delete=models.CASCADE, related_name="vouchers")
    package = models.ForeignKey(
        Package, on_delete=models.PROTECT, related_name="vouchers"
    )

    code = models.CharField(max_length=32)
    payment_reference = models.CharField(max_length=32, unique=True)
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default="active", db_index=True
    )

    # Package snapshot
    package_name = models.CharField(max_length=100, db_index=True)
    service_type = models.CharField(max_length=10, default="hotspot")
    price = models.DecimalField(max_digits=10, decimal_places=2)
    duration_minutes = models.PositiveIntegerField(default=0)
    upload_kbps = models.PositiveIntegerField(default=0)
    download_kbps = models.PositiveIntegerField(default=0)
    data_limit_mb = models.PositiveIntegerField(default=0)

    # Router provisioning
    router_user_id = models.CharField(max_length=50, blank=True, null=True)
    router_sync_error = models.TextField(blank=True)
    synced_at = models.DateTimeField(null=True, blank=True)

    # Usage
    is_used = models.BooleanField(default=False)
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="vouchers",
    )
    device_mac = models.CharField(max_length=17, blank=True)
    usage_started_at = models.DateTimeField(null=True, blank=True)
    usage_ends_at = models.DateTimeField(null=True, blank=True)
    data_used_mb = models.PositiveIntegerField(default=0)
    time_used_minutes = models.PositiveIntegerField(default=0)
    timed_on_purchase = models.BooleanField(default=False)
    purchase_expires_at = models.DateTimeField(null=True, blank=True)

    # Payment (filled atomically by the pool claim)
    payment_method = models.CharField(max_length=20, blank=True)
    transaction_id = models.CharField(max_length=100, unique=True, null=True, blank=True)
    payer_phone = models.CharField(max_length=64, blank=True)
    paid_amount = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    commission = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    paid_at = models.DateTimeField(null=True, blank=True)

    # Batch metadata
    batch_id = models.CharField(max_length=50, blank=True, db_index=True)
    batch_size = models.PositiveIntegerField(default=1)
    generated_by = models.CharField(max_length=100, blank=True)

    # Expiry policy
    activation_expires_at = models.DateTimeField(null=True, blank=True)
    auto_delete = models.BooleanField(default=True)
    expired_at = models.DateTimeField(null=True, blank=True)
    expired_by = models.CharField(max_length=30, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        unique_together = ["router", "code"]
        indexes = [
            models.Index(
                fields=["router", "package_name", "status"], name="voucher_router_pkg_status_idx"
            ),
            models.Index(
                fields=["status", "activation_expires_at"], name="voucher_status_activation_idx"
            ),
        ]

    def __str__(self):
        return f"{self.code} - {self.package_name} - {self.status}"

    @classmethod
    def generate_code(cls, length=None, taken=()):
        """Random code from CODE_ALPHABET not present in taken"""
        length = length or settings.VOUCHER_CODE_LENGTH
        while True:
            code = "".join(secrets.choice(cls.CODE_ALPHABET) for _ in range(length))
            if code not in taken:
                return code

    @classmethod
    def generate_payment_reference(cls):
        """Public reference customers quote when paying (never the code)"""
        suffix = "".join(secrets.choice(cls.CODE_ALPHABET) for _ in range(9))
        return f"VCH{suffix}"


# =============================================================================
# ROUTER IDENTIFIER CACHE
# =============================================================================


class ServiceIdentifier(models.Model):
    """
    Cached router-assigned id of a named service object (hotspot server,
    PPPoE server). Last writer wins; refreshed whenever discovery disagrees.
    """

    router = models.ForeignKey(
        Router, on_delete=models.CASCADE, related_name="service_identifiers"
    )
    service_type = models.CharField(max_length=10)
    name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=50)
    discovered_at = models.DateTimeField(default=timezone.now)

    class Meta:
        unique_together = ["router", "service_type", "name"]

    def __str__(self):
        return f"{self.router.name}:{self.service_type}:{self.name} -> {self.object_id}"


# =============================================================================
# AUDIT AND ALERTS
# =============================================================================


class PaymentWebhook(models.Model):
    """
    Log of payment webhooks received from M-Pesa
    Every settlement branch writes one row; it is the only trail for a
    misdelivered or lost payment.
    """

    WEBHOOK_EVENT_CHOICES = [
        ("C2B_CONFIRMATION", "C2B Confirmation"),
        ("STK_CALLBACK", "STK Callback"),
        ("OTHER", "Other"),
    ]

    PROCESSING_STATUS_CHOICES = [
        ("received", "Received"),
        ("processed", "Processed Successfully"),
        ("failed", "Processing Failed"),
        ("ignored", "Ignored"),
    ]

    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.SET_NULL,
        related_name="payment_webhooks",
        null=True,
        blank=True,
    )

    received_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    processing_status = models.CharField(
        max_length=20, choices=PROCESSING_STATUS_CHOICES, default="received"
    )
    processing_error = models.TextField(blank=True)
    outcome = models.CharField(max_length=30, blank=True)

    event_type = models.CharField(
        max_length=30, choices=WEBHOOK_EVENT_CHOICES, default="OTHER"
    )
    bill_reference = models.CharField(max_length=100, db_index=True)
    transaction_id = models.CharField(max_length=100, blank=True, db_index=True)
    msisdn = models.CharField(max_length=64, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    raw_payload = models.JSONField()

    payment = models.ForeignKey(
        Payment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_logs",
    )
    voucher = models.ForeignKey(
        Voucher,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_logs",
    )

    source_ip = models.GenericIPAddressField(null=True, blank=True)

    class Meta:
        ordering = ["-received_at"]
        indexes = [
            models.Index(
                fields=["bill_reference", "-received_at"], name="webhook_billref_received_idx"
            ),
            models.Index(
                fields=["processing_status", "-received_at"], name="webhook_status_received_idx"
            ),
        ]

    def __str__(self):
        return f"{self.bill_reference} - {self.event_type} - {self.outcome or self.processing_status}"

    def mark_processed(self, outcome, payment=None, voucher=None):
        """Mark webhook as successfully processed"""
        self.processing_status = "processed"
        self.processed_at = timezone.now()
        self.outcome = outcome
        if payment:
            self.payment = payment
        if voucher:
            self.voucher = voucher
        self.save()

    def mark_failed(self, outcome, error_message):
        """Mark webhook processing as failed"""
        self.processing_status = "failed"
        self.processed_at = timezone.now()
        self.outcome = outcome
        self.processing_error = error_message
        self.save()

    def mark_ignored(self, outcome, reason):
        """Mark webhook as ignored (duplicate, already settled)"""
        self.processing_status = "ignored"
        self.processed_at = timezone.now()
        self.outcome = outcome
        self.processing_error = reason
        self.save()


class OperatorAlert(models.Model):
    """
    Something an operator has to act on (restock, fix router access, ...)
    """

    ALERT_TYPE_CHOICES = [
        ("out_of_stock", "Out of Stock"),
        ("sync_failure", "Sync Failure"),
        ("provisioning_failure", "Provisioning Failure"),
    ]

    SEVERITY_CHOICES = [
        ("info", "Info"),
        ("warning", "Warning"),
        ("critical", "Critical"),
    ]

    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, related_name="operator_alerts"
    )
    router = models.ForeignKey(
        Router,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="operator_alerts",
    )
    alert_type = models.CharField(max_length=30, choices=ALERT_TYPE_CHOICES)
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES, default="warning")
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    is_acknowledged = models.BooleanField(default=False)
    acknowledged_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.tenant.slug} - {self.alert_type} - {self.severity}"

    def acknowledge(self):
        self.is_acknowledged = True
        self.acknowledged_at = timezone.now()
        self.save(update_fields=["is_acknowledged", "acknowledged_at"])


class SMSLog(models.Model):
    """
    Log of SMS notifications sent
    """

    SMS_TYPE_CHOICES = [
        ("voucher", "Voucher Delivery"),
        ("delayed", "Fulfilment Delayed"),
        ("operator_alert", "Operator Alert"),
        ("other", "Other"),
    ]

    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, related_name="sms_logs", null=True
    )
    phone_number = models.CharField(max_length=20, db_index=True)
    message = models.TextField()
    sms_type = models.CharField(
        max_length=20, choices=SMS_TYPE_CHOICES, default="other"
    )
    success = models.BooleanField(default=False)
    response_data = models.JSONField(null=True, blank=True)
    sent_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-sent_at"]

    def __str__(self):
        return f"{self.phone_number} - {self.sms_type} - {'Sent' if self.success else 'Failed'}"
