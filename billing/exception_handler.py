"""
DRF exception handler for the operator API.

Every error response has the shape:
{
    "success": false,
    "error": "Human-readable error message",
    "error_type": "timeout",             // router failures only
    "errors": { "field_name": ["..."] }  // validation failures only
}

Router transport failures are the upstream's fault and answer 502;
unknown provider kinds and service types are client errors (400).
"""

import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .exceptions import ConnectivityError, RouterError, UnsupportedProvider, UnsupportedService

logger = logging.getLogger(__name__)


def _flatten_errors(errors):
    messages = []
    for field, msgs in errors.items():
        if isinstance(msgs, list):
            messages.extend(f"{field}: {msg}" for msg in msgs)
        else:
            messages.append(f"{field}: {msgs}")
    return "; ".join(messages) or "Validation error"


def custom_exception_handler(exc, context):
    if isinstance(exc, (RouterError, ConnectivityError)):
        view = context.get("view")
        logger.warning(f"Router failure in {view.__class__.__name__ if view else 'API'}: {exc}")
        return Response(
            {"success": False, "error": str(exc), "error_type": exc.error_type},
            status=status.HTTP_502_BAD_GATEWAY,
        )

    if isinstance(exc, (UnsupportedProvider, UnsupportedService)):
        return Response(
            {"success": False, "error": str(exc)},
            status=status.HTTP_400_BAD_REQUEST,
        )

    response = drf_exception_handler(exc, context)
    if response is None:
        # Unhandled: Django's 500 handling takes over
        return response

    data = response.data
    if isinstance(data, list):
        response.data = {"success": False, "error": "; ".join(str(e) for e in data)}
    elif isinstance(data, dict) and "detail" in data:
        # Authentication, permission and throttling errors
        response.data = {"success": False, "error": str(data["detail"])}
    elif isinstance(data, dict) and "success" not in data:
        response.data = {"success": False, "error": _flatten_errors(data), "errors": data}
    elif isinstance(data, dict) and data.get("success") is False and "error" not in data:
        data["error"] = data.pop("message", "An error occurred")

    return response
