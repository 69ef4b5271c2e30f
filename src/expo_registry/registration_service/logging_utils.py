# -*- coding: utf-8 -*-
"""Structured logging helpers for the registration service."""
from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

from .types import HashFunc, LoggerLike


class StructuredLogger(LoggerLike):
    """Renders each event as one JSON object per log line.

    ``context`` fields are merged into every event; ``bind`` derives a logger
    with additional fixed fields (for example the emitting component).
    """

    def __init__(self, logger: logging.Logger, context: Optional[Mapping[str, Any]] = None) -> None:
        self._logger = logger
        self._context: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self._logger, {**self._context, **context})

    def _emit(self, level: int, event: str, extra: Mapping[str, Any] | None, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        payload: Dict[str, Any] = {"event": event, **self._context}
        if extra:
            payload.update(extra)
        self._logger.log(level, json.dumps(payload, ensure_ascii=False, default=str), **kwargs)

    def info(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.INFO, msg, extra, **kwargs)

    def warning(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.WARNING, msg, extra, **kwargs)

    def error(self, msg: str, *args: Any, extra: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        self._emit(logging.ERROR, msg, extra, **kwargs)


def build_logger(name: str = "expo_registry") -> StructuredLogger:
    """Return a JSON logger; a bare handler is attached only when nothing is configured."""

    logger = logging.getLogger(name)
    if not (logger.handlers or logging.getLogger().handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return StructuredLogger(logger)


def make_hash_fn(salt: str) -> HashFunc:
    """Salted digest used to keep phones and emails out of log lines."""

    prefix = hashlib.sha256(salt.encode("utf-8"))

    def _hash(value: str) -> str:
        digest = prefix.copy()
        digest.update((value or "").encode("utf-8"))
        return digest.hexdigest()[:16]

    return _hash


def setup_logging(level: int = logging.INFO) -> None:
    """Install one stderr handler on the root logger unless one is already configured."""

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


__all__ = ["StructuredLogger", "build_logger", "make_hash_fn", "setup_logging"]
