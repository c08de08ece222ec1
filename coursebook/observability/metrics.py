from __future__ import annotations
import time
from fastapi import Response, Request
from prometheus_client import Counter, Histogram, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from ..config import get_settings

S = get_settings()

REGISTRY = CollectorRegistry(auto_describe=True)

# ---------- Metric definitions ----------
HTTP_REQS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"], registry=REGISTRY)
HTTP_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency", ["method", "path"], registry=REGISTRY)

SIGNUP_CONFIRMED   = Counter("signup_confirmed_total",   "Signups confirmed on admission", registry=REGISTRY)
SIGNUP_WAITLISTED  = Counter("signup_waitlisted_total",  "Signups queued on the waitlist", registry=REGISTRY)
SIGNUP_CANCELLED   = Counter("signup_cancelled_total",   "Signups cancelled", ["actor"], registry=REGISTRY)
OFFERS_SENT        = Counter("offers_sent_total",        "Waitlist offers issued", registry=REGISTRY)
OFFERS_CLAIMED     = Counter("offers_claimed_total",     "Waitlist offers claimed", registry=REGISTRY)
OFFERS_WITHDRAWN   = Counter("offers_withdrawn_total",   "Live offers revoked by a capacity cut", registry=REGISTRY)
OFFERS_EXPIRED     = Counter("offers_expired_total",     "Waitlist offers reclaimed by the sweeper", registry=REGISTRY)
CLAIMS_LOST_RACE   = Counter("claims_lost_race_total",   "Claims rejected on capacity re-check", registry=REGISTRY)
REFUNDS            = Counter("refunds_total",            "Refund attempts", ["outcome"], registry=REGISTRY)
PAYMENT_HOLDS      = Counter("payment_holds_total",      "Authorization hold outcomes", ["outcome"], registry=REGISTRY)
NOTIFICATIONS      = Counter("notifications_total",      "Notification deliveries", ["template", "outcome"], registry=REGISTRY)
SESSIONS_CANCELLED = Counter("sessions_cancelled_total", "Sessions cancelled by operators", registry=REGISTRY)

# ---------- /metrics endpoint factory ----------
def metrics_app():
    async def _metrics(_: Request):
        if not S.METRICS_ENABLED:
            return Response(status_code=404)
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)
    return _metrics

# ---------- HTTP middleware for latency/counters ----------
class MetricsHTTPMiddleware:
    def __init__(self, app):
        self.app = app
    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)
        method = scope["method"]
        # route template keeps label cardinality bounded; ids live in the raw path
        route = scope.get("route")
        t0 = time.perf_counter()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                path = getattr(scope.get("route") or route, "path", scope["path"])
                HTTP_REQS.labels(method=method, path=path, status=message["status"]).inc()
                HTTP_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - t0)
            await send(message)

        await self.app(scope, receive, send_wrapper)
