from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from ....core.config import Settings
from ....core.errors import LockTimeout, WebhookRejected
from ....core.logging import get_logger
from ....core.observability import WEBHOOK_EVENTS
from ....core.unit_of_work import UnitOfWork
from ....services.components import build_components
from ...deps import get_app_settings, get_db_session

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


async def read_body(request: Request) -> bytes:
    return await request.body()


@router.post("/discourse")
def discourse_webhook(
    request: Request,
    body: bytes = Depends(read_body),
    session: Session = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    x_discourse_event_type: str | None = Header(None, alias="X-Discourse-Event-Type"),
    x_discourse_event: str | None = Header(None, alias="X-Discourse-Event"),
    x_discourse_event_id: str | None = Header(None, alias="X-Discourse-Event-Id"),
) -> Response:
    """
    Discourse webhook receiver (configure Discourse to send "user" events).

    Unauthenticated requests get a bare 500 so that probing reveals nothing;
    failures after authentication carry the error for Discourse's delivery log.
    """
    source_ip = request.client.host if request.client else None
    try:
        with UnitOfWork(session) as uow:
            ingestor = build_components(uow, settings).webhook_ingestor()
            text = ingestor.handle(
                x_discourse_event_type,
                x_discourse_event,
                x_discourse_event_id,
                body,
                request.headers,
                source_ip,
            )
    except WebhookRejected as exc:
        logger.warning("webhook.rejected", error=str(exc), client=source_ip)
        WEBHOOK_EVENTS.labels(event_type="unverified", outcome="rejected").inc()
        return Response(status_code=500)
    except LockTimeout:
        WEBHOOK_EVENTS.labels(event_type=x_discourse_event_type or "none", outcome="busy").inc()
        raise
    except Exception as exc:  # noqa: BLE001 - sender is authenticated, show it the error
        logger.error(
            "webhook.failed",
            event_type=x_discourse_event_type,
            event_name=x_discourse_event,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        WEBHOOK_EVENTS.labels(event_type=x_discourse_event_type or "none", outcome="error").inc()
        return PlainTextResponse(
            f"Internal Server Error\n\n{type(exc).__name__}: {exc}\n", status_code=500
        )

    WEBHOOK_EVENTS.labels(event_type=x_discourse_event_type or "none", outcome="ok").inc()
    return PlainTextResponse(text)
