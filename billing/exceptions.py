"""
Error taxonomy for router access, catalog reconciliation and payment settlement.

Router transport failures are always raised as one of the RouterError
subclasses below; callers never see a raw ``requests`` exception.
"""


# =============================================================================
# ROUTER TRANSPORT
# =============================================================================


class RouterError(Exception):
    """Base class for every failure talking to a router's REST API"""

    error_type = "router_error"

    def __init__(self, message="", host=None):
        self.host = host
        super().__init__(message or self.default_message())

    def default_message(self):
        return "Router request failed"


class AuthenticationFailed(RouterError):
    error_type = "authentication_failed"

    def default_message(self):
        return "Router rejected the supplied credentials"


class Timeout(RouterError):
    error_type = "timeout"

    def default_message(self):
        return "Router did not respond in time"


class ConnectionRefused(RouterError):
    error_type = "connection_refused"

    def default_message(self):
        return "Router refused the connection (is the REST service enabled?)"


class HostUnreachable(RouterError):
    error_type = "host_unreachable"

    def default_message(self):
        return "Router host is unreachable"


class ConnectionReset(RouterError):
    error_type = "connection_reset"

    def default_message(self):
        return "Connection to the router was reset"


class ProtocolError(RouterError):
    """Router answered, but with a non-2xx status or an unreadable body"""

    error_type = "protocol_error"

    def __init__(self, status, body="", host=None):
        self.status = status
        self.body = body
        detail = body if isinstance(body, str) else str(body)
        super().__init__(f"Router returned HTTP {status}: {detail[:200]}", host=host)


class ObjectIdMissing(RouterError):
    """A creation response carried no router-assigned identifier"""

    error_type = "object_id_missing"

    def __init__(self, payload=None, host=None):
        self.payload = payload
        super().__init__(
            f"Router response contained no object id: {str(payload)[:200]}", host=host
        )


# =============================================================================
# RECONCILIATION
# =============================================================================


class ConnectivityError(Exception):
    """Router could not be read; nothing was written to the catalog"""

    def __init__(self, router_error):
        self.router_error = router_error
        super().__init__(f"Router unreachable: {router_error}")

    @property
    def error_type(self):
        return self.router_error.error_type


class UnsupportedProvider(Exception):
    pass


class UnsupportedService(Exception):
    pass


class ServiceNotFound(Exception):
    """No server with the requested name exists on the router"""


# =============================================================================
# SETTLEMENT
# =============================================================================


class SettlementError(Exception):
    """
    Outcome of a payment confirmation that did not settle a voucher.

    ``acknowledge`` tells the webhook whether to answer with a success
    result code (the gateway must stop retrying) or a failure one.
    """

    outcome = "error"
    acknowledge = False

    def __init__(self, message, **context):
        self.context = context
        super().__init__(message)


class VoucherNotFound(SettlementError):
    outcome = "voucher_not_found"
    acknowledge = False


class AmountMismatch(SettlementError):
    """Wrong amount for a manual payment; retrying cannot change it"""

    outcome = "amount_mismatch"
    acknowledge = True

    def __init__(self, expected, received, **context):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Amount mismatch. Expected {expected}, received {received}", **context
        )


class OutOfStock(SettlementError):
    outcome = "out_of_stock"
    acknowledge = True


class DuplicateTransaction(SettlementError):
    outcome = "duplicate"
    acknowledge = True


class AlreadySettledDifferently(SettlementError):
    outcome = "already_settled"
    acknowledge = True
