"""Gateway middleware: request identifiers and API payload limits.

``RequestIdMiddleware`` gives every incoming request an identifier, read
from the ``X-Request-Id`` header when the client supplies one and
generated otherwise. The id is stored on the request and in a context
variable so the log filter and the outgoing HTTP adapters can use it
without passing it around, and it is echoed back in ``X-Request-ID``.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies with 413
before any view code runs.
"""

import contextvars
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Django middleware that sets and returns a per-request identifier."""

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header to add to outgoing responses

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject API requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        limit = getattr(settings, "API_MAX_BYTES", 1 * 1024 * 1024)
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
