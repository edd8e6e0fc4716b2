"""
NEXTSMS API Integration
Customer and operator notifications for voucher sales
"""

import requests
import base64
from django.conf import settings
import logging

logger = logging.getLogger(__name__)


class NextSMSAPI:
    """
    NEXTSMS API client for sending SMS notifications
    """

    def __init__(self):
        self.username = settings.NEXTSMS_USERNAME
        self.password = settings.NEXTSMS_PASSWORD
        self.sender_id = settings.NEXTSMS_SENDER_ID
        self.base_url = settings.NEXTSMS_BASE_URL

        credentials = f"{self.username}:{self.password}"
        self.auth_token = base64.b64encode(credentials.encode()).decode()

    def send_sms(self, phone_number, message, reference=None):
        """
        Send SMS to a single recipient

        Args:
            phone_number: Recipient phone number (format: 254XXXXXXXXX)
            message: SMS message text
            reference: Optional reference ID for tracking

        Returns:
            dict: Response with success status and message
        """
        if not settings.SMS_ENABLED:
            logger.info(f"SMS disabled, not sending to {phone_number}: {message}")
            return {"success": False, "message": "SMS sending is disabled"}

        url = f"{self.base_url}/api/sms/v1/text/single"

        headers = {
            "Authorization": f"Basic {self.auth_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        payload = {
            "from": self.sender_id,
            "to": phone_number,
            "text": message,
            "reference": reference or f"ISP-{phone_number}",
        }

        try:
            response = requests.post(url, json=payload, headers=headers, timeout=10)
            response.raise_for_status()

            result = response.json()

            logger.info(f"SMS sent successfully to {phone_number}")
            return {"success": True, "message": "SMS sent successfully", "data": result}

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send SMS to {phone_number}: {str(e)}")
            if getattr(e, "response", None) is not None:
                logger.error(f"Response: {e.response.text}")
            return {"success": False, "message": "Failed to send SMS"}
        except ValueError:
            logger.error(f"SMS provider returned a non-JSON body for {phone_number}")
            return {"success": False, "message": "Invalid SMS provider response"}

    def send_voucher_code(self, phone_number, voucher):
        """Deliver a purchased voucher code"""
        message = (
            f"Payment of KES {voucher.paid_amount or voucher.price} received. "
            f"Your {voucher.package_name} voucher code is {voucher.code}. "
            f"Ref {voucher.payment_reference}."
        )
        return self.send_sms(phone_number, message, f"VOUCHER-{voucher.payment_reference}")

    def send_fulfilment_delayed(self, phone_number, payment):
        """Payment received while the package was out of stock"""
        message = (
            f"Payment of KES {payment.paid_amount or payment.amount} received "
            f"(ref {payment.order_reference}). Your voucher will be sent shortly."
        )
        return self.send_sms(phone_number, message, f"DELAYED-{payment.order_reference}")

    def send_operator_alert(self, phone_number, alert):
        """Forward an operator alert by SMS"""
        message = f"[{alert.severity.upper()}] {alert.message}"
        return self.send_sms(phone_number, message, f"ALERT-{alert.pk}")


def _log_sms(tenant, phone_number, message_type, result, message=""):
    from .models import SMSLog

    SMSLog.objects.create(
        tenant=tenant,
        phone_number=phone_number,
        message=message or result.get("message", ""),
        sms_type=message_type,
        success=result.get("success", False),
        response_data=result.get("data"),
    )


def notify_voucher_purchased(voucher):
    """
    Send the voucher code to the buyer. Never raises: a failed notification
    must not undo a settled payment.
    """
    phone_number = voucher.customer.phone_number if voucher.customer else ""
    if not phone_number:
        logger.info(f"No plaintext phone for voucher {voucher.payment_reference}, code not sent")
        return False
    try:
        result = NextSMSAPI().send_voucher_code(phone_number, voucher)
        _log_sms(voucher.tenant, phone_number, "voucher", result)
        return result.get("success", False)
    except Exception as e:
        logger.error(f"Voucher notification failed for {voucher.payment_reference}: {e}")
        return False


def notify_fulfilment_delayed(payment):
    """Tell the buyer their voucher is delayed. Never raises."""
    if not payment.phone_number:
        return False
    try:
        result = NextSMSAPI().send_fulfilment_delayed(payment.phone_number, payment)
        _log_sms(payment.tenant, payment.phone_number, "delayed", result)
        return result.get("success", False)
    except Exception as e:
        logger.error(f"Delay notification failed for {payment.order_reference}: {e}")
        return False


def raise_operator_alert(tenant, alert_type, message, router=None, severity="warning", **metadata):
    """Record an operator alert and forward it to the configured phones"""
    from .models import OperatorAlert

    alert = OperatorAlert.objects.create(
        tenant=tenant,
        router=router,
        alert_type=alert_type,
        severity=severity,
        message=message,
        metadata=metadata,
    )
    logger.warning(f"Operator alert for {tenant.slug}: {message}")

    recipients = [
        phone
        for phone in (tenant.business_phone, settings.OPERATOR_ALERT_PHONE)
        if phone
    ]
    for phone_number in recipients:
        try:
            result = NextSMSAPI().send_operator_alert(phone_number, alert)
            _log_sms(tenant, phone_number, "operator_alert", result)
        except Exception as e:
            logger.error(f"Could not forward alert {alert.pk} to {phone_number}: {e}")
    return alert
