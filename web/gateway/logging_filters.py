"""Logging filters for enriching log records with request context."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach a ``request_id`` attribute to log records.

    Records emitted outside a request (for example by the delivery listener
    command) get ``"-"`` so ``%(request_id)s`` always resolves.
    """

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        return True
