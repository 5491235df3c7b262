"""
Human-readable progress lines for the analysis pipeline.

Pipeline steps call ``emit_progress``; whoever runs the pipeline decides where
the lines go by installing an emitter with ``progress_emitter_context`` (the
CLI prints them on stderr). Every line is also written to the log under the
step's category, so the log file keeps the same narrative.
"""
from __future__ import annotations

import contextlib
import contextvars
import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from siptrace.logging_setup import get_correlation_id

LOGGER = logging.getLogger(__name__)

# Pipeline step -> log category.
STEP_CATEGORIES = {
    "seed": "SEARCH",
    "fanout": "SEARCH",
    "correlate": "CORRELATE",
}


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    step: str
    correlation_id: str


ProgressEmitter = Callable[[ProgressEvent], None]

_progress_emitter_var: contextvars.ContextVar[Optional[ProgressEmitter]] = contextvars.ContextVar(
    "progress_emitter", default=None
)


@contextlib.contextmanager
def progress_emitter_context(emitter: Optional[ProgressEmitter]) -> Iterator[None]:
    token = _progress_emitter_var.set(emitter)
    try:
        yield
    finally:
        _progress_emitter_var.reset(token)


def emit_progress(message: str, step: str) -> None:
    event = ProgressEvent(message=str(message), step=step, correlation_id=get_correlation_id())
    LOGGER.info("Progress step=%s %s", step, event.message, extra={"category": STEP_CATEGORIES.get(step, "CONFIG")})

    emitter = _progress_emitter_var.get()
    if emitter is None:
        return
    try:
        emitter(event)
    except Exception as exc:
        # A broken sink (closed pipe) must not abort the analysis.
        LOGGER.debug("Progress emitter failed error=%s", exc, extra={"category": "ERRORS"})
