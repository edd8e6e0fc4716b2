"""
Fake RouterOS REST API for tests

Install with patch("billing.router_gateway.requests.request", new=fake).
"""

import json
from urllib.parse import urlsplit


class FakeResponse:
    """Stand-in for requests.Response"""

    def __init__(self, payload=None, status_code=200, raw=None):
        self._payload = payload
        self.status_code = status_code
        if raw is not None:
            self.content = raw
        elif payload is None:
            self.content = b""
        else:
            self.content = json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        return json.loads(self.content)


class FakeRouterOS:
    """
    In-memory RouterOS: collections keyed by REST path, records carry ".id".

    Failures can be queued per (method, path) for the next call, or scheduled
    for the n-th call of that method/path (1-based).
    """

    def __init__(self):
        self.collections = {}
        self.calls = []
        self._queued = {}
        self._scheduled = {}
        self._counts = {}
        self._next_id = 1

    def add(self, path, record):
        record = dict(record)
        if ".id" not in record:
            record[".id"] = f"*{self._next_id:X}"
            self._next_id += 1
        self.collections.setdefault(path, []).append(record)
        return record

    def records(self, path):
        return self.collections.get(path, [])

    def fail(self, method, path, outcome):
        self._queued.setdefault((method, path), []).append(outcome)

    def fail_on(self, method, path, call_number, outcome):
        self._scheduled[(method, path, call_number)] = outcome

    def calls_to(self, method, path=None):
        return [
            call
            for call in self.calls
            if call[0] == method and (path is None or call[1] == path)
        ]

    def __call__(self, method, url, json=None, **kwargs):
        path = urlsplit(url).path
        self.calls.append((method, path, json))
        key = (method, path)
        self._counts[key] = self._counts.get(key, 0) + 1

        outcome = self._scheduled.pop((method, path, self._counts[key]), None)
        if outcome is None and self._queued.get(key):
            outcome = self._queued[key].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome

        if method == "GET":
            return FakeResponse(list(self.records(path)))
        if method == "PUT":
            return FakeResponse(self.add(path, json or {}))

        collection, _, object_id = path.rpartition("/")
        if method == "POST" and object_id == "add":
            record = self.add(collection, json or {})
            return FakeResponse({"ret": record[".id"]})

        records = self.records(collection)
        match = next((r for r in records if r[".id"] == object_id), None)
        if match is None:
            return FakeResponse({"error": 404, "message": "Not Found", "detail": "no such item"}, 404)
        if method == "PATCH":
            match.update(json or {})
            return FakeResponse(match)
        if method == "DELETE":
            records.remove(match)
            return FakeResponse(None, 204)
        return FakeResponse({"error": 400, "message": "Bad Request"}, 400)


def make_tenant(slug="acme", account_type="personal", **fields):
    from billing.models import Tenant

    return Tenant.objects.create(
        slug=slug, business_name=slug.title(), account_type=account_type, **fields
    )


def make_router(tenant, name="core", status="online", **fields):
    from billing.models import Router

    fields.setdefault("host", "10.0.0.1")
    return Router.objects.create(
        tenant=tenant,
        name=name,
        username="api",
        password="secret",
        status=status,
        **fields,
    )


def make_package(router, name="1hour-10ksh", price=10, duration_minutes=60, **fields):
    from billing.models import Package

    return Package.objects.create(
        router=router,
        name=name,
        price=price,
        duration_minutes=duration_minutes,
        **fields,
    )
