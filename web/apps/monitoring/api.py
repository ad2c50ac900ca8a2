import logging

from django.db import connection
from django.http import JsonResponse

from apps.orders import providers

logger = logging.getLogger(__name__)


def health_view(_request):
    """Report database and delivery channel health; 503 if either is down."""
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception as exc:
        logger.warning("database health check failed: %s", exc)

    try:
        channel_ok = providers.get_event_channel().health_check()
    except Exception as exc:
        logger.warning("channel health check failed: %s", exc)
        channel_ok = False

    ok = db_ok and channel_ok
    code = 200 if ok else 503
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "delivery_channel": {"ok": channel_ok}}},
        status=code,
    )
