"""
MikroTik RouterOS REST gateway

Every call to a router goes through RouterGateway.call(), which applies
Basic auth and a bounded timeout, and turns transport failures into one
of the RouterError subclasses in billing.exceptions. Credentials are
passed per gateway instance (see RouterConfig); nothing is cached at
module level.
"""

import errno
import logging
import socket

import requests
from django.conf import settings

from .exceptions import (
    AuthenticationFailed,
    ConnectionRefused,
    ConnectionReset,
    HostUnreachable,
    ObjectIdMissing,
    ProtocolError,
    Timeout,
)

logger = logging.getLogger(__name__)

# Router-side collections per service type
PROFILE_PATHS = {
    "hotspot": "/rest/ip/hotspot/user/profile",
    "pppoe": "/rest/ppp/profile",
}
SERVER_PATHS = {
    "hotspot": "/rest/ip/hotspot",
    "pppoe": "/rest/interface/pppoe-server/server",
}
ACTIVE_SESSION_PATHS = {
    "hotspot": "/rest/ip/hotspot/active",
    "pppoe": "/rest/ppp/active",
}
USER_PATHS = {
    "hotspot": "/rest/ip/hotspot/user",
    "pppoe": "/rest/ppp/secret",
}

# Server records are matched on different keys per service
SERVER_NAME_FIELDS = {
    "hotspot": "name",
    "pppoe": "service-name",
}

# Order matters: REST responses use ".id", some proxies flatten it to "id",
# and the legacy "/add" command endpoint answers with {"ret": "*1A"}
OBJECT_ID_FIELDS = (".id", "id", "ret")

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN}
_RESET_ERRNOS = {errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE}


class RouterConfig:
    """Connection details for one router, built fresh for each unit of work"""

    def __init__(
        self,
        host,
        username,
        password,
        port=None,
        use_ssl=False,
        timeout=None,
        verify_ssl=None,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.port = port
        self.use_ssl = use_ssl
        self.timeout = timeout or settings.ROUTER_REQUEST_TIMEOUT
        self.verify_ssl = (
            settings.ROUTER_VERIFY_SSL if verify_ssl is None else verify_ssl
        )

    def __repr__(self):
        return f"<RouterConfig {self.username}@{self.base_url}>"

    @classmethod
    def from_router(cls, router):
        return cls(
            host=router.host,
            username=router.username,
            password=router.password,
            port=router.port,
            use_ssl=router.use_ssl,
        )

    @property
    def base_url(self):
        scheme = "https" if self.use_ssl else "http"
        default_port = 443 if self.use_ssl else 80
        if self.port and int(self.port) != default_port:
            return f"{scheme}://{self.host}:{self.port}"
        return f"{scheme}://{self.host}"


def _exception_chain(exc):
    """Yield exc and every exception wrapped inside it (requests/urllib3 nest deeply)"""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.append(getattr(current, "reason", None))
        stack.append(current.__cause__)
        stack.append(current.__context__)
        stack.extend(
            arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException)
        )


def classify_connection_error(exc, host=None):
    """Map a requests ConnectionError onto the closed RouterError set"""
    for inner in _exception_chain(exc):
        if isinstance(inner, ConnectionRefusedError):
            return ConnectionRefused(host=host)
        if isinstance(inner, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
            return ConnectionReset(host=host)
        if isinstance(inner, socket.gaierror):
            return HostUnreachable(f"Cannot resolve router host {host}", host=host)
        if isinstance(inner, OSError) and inner.errno in _UNREACHABLE_ERRNOS:
            return HostUnreachable(host=host)
        if isinstance(inner, OSError) and inner.errno in _RESET_ERRNOS:
            return ConnectionReset(host=host)
        if isinstance(inner, OSError) and inner.errno == errno.ECONNREFUSED:
            return ConnectionRefused(host=host)

    text = str(exc).lower()
    if "refused" in text:
        return ConnectionRefused(host=host)
    if "reset" in text or "aborted" in text or "remotedisconnected" in text:
        return ConnectionReset(host=host)
    return HostUnreachable(host=host)


def _error_body(response):
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return data.get("detail") or data.get("message") or data.get("error") or data
    return data


def extract_object_id(payload):
    """
    Pull the router-assigned identifier out of a creation/list response.

    Tries ".id", then "id", then "ret". Raises ObjectIdMissing rather than
    returning None so a missing id is always visible to the caller.
    """
    if isinstance(payload, list) and len(payload) == 1:
        payload = payload[0]
    if isinstance(payload, dict):
        for field in OBJECT_ID_FIELDS:
            value = payload.get(field)
            if value:
                return str(value)
    raise ObjectIdMissing(payload)


class RouterGateway:
    """
    Thin client for the RouterOS REST API of a single router
    """

    def __init__(self, config):
        self.config = config

    @classmethod
    def for_router(cls, router):
        return cls(RouterConfig.from_router(router))

    # -------------------------------------------------------------------------
    # Core request primitive
    # -------------------------------------------------------------------------

    def call(self, path, method="GET", body=None):
        """
        Issue one authenticated request and return the decoded JSON body
        (None for empty responses).

        Raises AuthenticationFailed, Timeout, ConnectionRefused,
        HostUnreachable, ConnectionReset or ProtocolError.
        """
        config = self.config
        url = f"{config.base_url}{path}"
        host = config.host

        try:
            response = requests.request(
                method,
                url,
                auth=(config.username, config.password),
                json=body,
                headers={"Accept": "application/json"},
                timeout=config.timeout,
                verify=config.verify_ssl,
            )
        except requests.exceptions.Timeout as e:
            logger.warning(f"Router {host} timed out on {method} {path}")
            raise Timeout(host=host) from e
        except requests.exceptions.SSLError as e:
            logger.warning(f"TLS failure talking to router {host}: {e}")
            raise ProtocolError(0, f"TLS handshake failed: {e}", host=host) from e
        except requests.exceptions.ConnectionError as e:
            error = classify_connection_error(e, host)
            logger.warning(f"Router {host} {error.error_type} on {method} {path}")
            raise error from e
        except requests.exceptions.ChunkedEncodingError as e:
            raise ConnectionReset(host=host) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Router request error for {host}: {e}")
            raise ProtocolError(0, str(e), host=host) from e

        if response.status_code == 401:
            logger.warning(f"Router {host} rejected credentials for {config.username}")
            raise AuthenticationFailed(host=host)

        if not 200 <= response.status_code < 300:
            body_detail = _error_body(response)
            logger.warning(
                f"Router {host} returned {response.status_code} on {method} {path}: {body_detail}"
            )
            raise ProtocolError(response.status_code, body_detail, host=host)

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(
                response.status_code, f"Invalid JSON: {response.text[:200]}", host=host
            ) from e

    # -------------------------------------------------------------------------
    # Generic resource helpers
    # -------------------------------------------------------------------------

    def list(self, path):
        data = self.call(path, "GET")
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return data

    def create(self, path, body):
        """
        Create a resource and return its router-assigned id.

        RouterOS 7 creates with PUT on the collection; older REST builds only
        accept POST on the "/add" command endpoint, which is tried when the
        PUT is refused as unsupported.
        """
        try:
            payload = self.call(path, "PUT", body)
        except ProtocolError as e:
            if e.status not in (404, 405, 501):
                raise
            logger.info(f"PUT {path} unsupported on {self.config.host}, using /add")
            payload = self.call(f"{path}/add", "POST", body)
        return extract_object_id(payload)

    def update(self, path, object_id, body):
        return self.call(f"{path}/{object_id}", "PATCH", body)

    def delete(self, path, object_id):
        return self.call(f"{path}/{object_id}", "DELETE")

    # -------------------------------------------------------------------------
    # Domain helpers
    # -------------------------------------------------------------------------

    def list_profiles(self, service_type):
        return self.list(PROFILE_PATHS[service_type])

    def list_users(self, service_type="hotspot"):
        return self.list(USER_PATHS[service_type])

    def create_user(
        self,
        name,
        password,
        profile,
        service_type="hotspot",
        limit_uptime=None,
        server=None,
        comment="",
    ):
        """Create a hotspot user or PPP secret and return its router id"""
        if service_type == "hotspot":
            body = {
                "name": name,
                "password": password,
                "profile": profile,
                "server": server or settings.ROUTER_DEFAULT_HOTSPOT_SERVER,
            }
            if limit_uptime and limit_uptime != "0":
                body["limit-uptime"] = limit_uptime
        else:
            body = {
                "name": name,
                "password": password,
                "profile": profile,
                "service": "pppoe",
            }
        if comment:
            body["comment"] = comment
        return self.create(USER_PATHS[service_type], body)

    def delete_user(self, object_id, service_type="hotspot"):
        return self.delete(USER_PATHS[service_type], object_id)

    def list_servers(self, service_type):
        return self.list(SERVER_PATHS[service_type])

    def set_server_disabled(self, service_type, object_id, disabled):
        return self.update(
            SERVER_PATHS[service_type],
            object_id,
            {"disabled": "true" if disabled else "false"},
        )

    def list_active_sessions(self, service_type):
        return self.list(ACTIVE_SESSION_PATHS[service_type])


def call(config, path, method="GET", body=None):
    """Single-shot request against the router described by config"""
    return RouterGateway(config).call(path, method, body)
