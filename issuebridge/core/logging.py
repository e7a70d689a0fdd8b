"""Structured logging via structlog.

Configures structlog once at application startup.

Renderer selection:
  debug=True   ConsoleRenderer with colours for local development.
  debug=False  JSONRenderer for machine-parseable logs in production.

ContextVar injection:
  ``request_id`` and ``delivery_id`` are read from
  ``issuebridge.core.middleware`` and added to every log line, so a
  webhook's log trail can be matched to the delivery GitHub shows in the
  app's "Recent Deliveries" page.
"""

from __future__ import annotations

import logging
import sys

import structlog

from issuebridge.core.middleware import get_delivery_id, get_request_id

_HANDLER_NAME = "issuebridge"


def _inject_context_vars(
    logger: logging.Logger,
    method: str,
    event_dict: dict,
) -> dict:
    """Structlog processor: inject request_id and delivery_id from ContextVars."""
    request_id = get_request_id()
    delivery_id = get_delivery_id()
    if request_id:
        event_dict["request_id"] = request_id
    if delivery_id:
        event_dict["delivery_id"] = delivery_id
    return event_dict


def configure_structlog(debug: bool = True) -> None:
    """Configure structlog for the application lifetime.

    Call once from ``create_app()``. Calling again reconfigures in place.
    """
    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context_vars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (our modules, SQLAlchemy, httpx) through the same
    # processors so request_id and delivery_id reach them too.
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    handler.set_name(_HANDLER_NAME)
    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    # httpx logs full request URLs at INFO, including manifest codes.
    logging.getLogger("httpx").setLevel(logging.WARNING)
