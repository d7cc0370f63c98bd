from prometheus_client import Counter

WEBHOOK_EVENTS = Counter(
    "inbox_webhook_events_total",
    "Normalized webhook events by outcome",
    ["platform", "kind", "outcome"],
)
WEBHOOK_SIGNATURE_FAILURES = Counter(
    "inbox_webhook_signature_failures_total",
    "Webhook deliveries dropped for a bad or missing signature",
    ["platform"],
)
OUTBOUND_MESSAGES = Counter(
    "inbox_outbound_messages_total",
    "Operator-initiated sends by outcome",
    ["platform", "outcome"],
)
REALTIME_PUBLISH = Counter(
    "inbox_realtime_publish_total",
    "Realtime events published by outcome",
    ["outcome"],
)


def observe_webhook_event(platform: str, kind: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(platform=platform, kind=kind, outcome=outcome).inc()


def observe_outbound(platform: str, outcome: str) -> None:
    OUTBOUND_MESSAGES.labels(platform=platform, outcome=outcome).inc()
