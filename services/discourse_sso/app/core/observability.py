from prometheus_client import Counter
from starlette_exporter import PrometheusMiddleware, handle_metrics

SSO_LOGINS = Counter(
    "discourse_sso_logins_total",
    "Interactive SSO login attempts by outcome",
    ["outcome"],
)
WEBHOOK_EVENTS = Counter(
    "discourse_sso_webhook_events_total",
    "Webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)


def add_prometheus(app, app_name: str = "discourse_sso") -> None:
    app.add_middleware(
        PrometheusMiddleware,
        app_name=app_name,
        prefix=app_name,
        group_paths=True,
    )
    app.add_route("/metrics", handle_metrics)
