from __future__ import annotations

import logging
import sys
from typing import TextIO, cast

import structlog


def configure_logging(
    level: str = "INFO",
    json: bool = True,
    *,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for reviewline.

    With ``json=True`` every entry is rendered as one JSON object per line,
    suitable for log shipping. With ``json=False`` a coloured console
    renderer is used instead.

    Args:
        level: Standard logging level name, e.g. "DEBUG", "INFO", "WARNING".
        json: Render entries as JSON when True, as console text otherwise.
        stream: Destination stream (defaults to ``sys.stdout``).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    out = stream if stream is not None else sys.stdout

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def bind_pipeline(pipeline_id: str, **extra: str) -> None:
    """Attach *pipeline_id* (and any *extra* keys) to every entry logged
    from the current task until :func:`unbind_pipeline` is called."""
    structlog.contextvars.bind_contextvars(pipeline_id=pipeline_id, **extra)


def unbind_pipeline(*extra: str) -> None:
    structlog.contextvars.unbind_contextvars("pipeline_id", *extra)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named structlog logger.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
    """
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
