"""Loguru setup for orchestrator runs and node agents."""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterable, Mapping
from typing import Any, TextIO

from loguru import logger

PACKAGE = "clusterform"

# run_id is bound per orchestration run; "-" marks lines outside any run
DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} | run={extra[run_id]} - {message}"
)


def _qualify(scope: str) -> str:
    scope = scope.strip().strip(".")
    if scope == PACKAGE or scope.startswith(f"{PACKAGE}."):
        return scope
    return f"{PACKAGE}.{scope}"


def scope_filter(scopes: Iterable[str]) -> Callable[[Mapping[str, Any]], bool]:
    """Build a loguru filter passing DEBUG records from the named modules only.

    Scopes may be given relative to the package (``orchestrator.convergence``)
    or fully qualified.
    """
    prefixes = tuple(_qualify(scope) for scope in scopes if scope.strip())

    def _filter(record: Mapping[str, Any]) -> bool:
        if record["level"].name != "DEBUG":
            return False
        name = record["name"] or ""
        return any(name == prefix or name.startswith(f"{prefix}.") for prefix in prefixes)

    return _filter


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | None = None,
) -> tuple[int, ...]:
    """Replace all loguru handlers with a ``level`` sink on stderr.

    When ``debug_scopes`` is non-empty and ``level`` is above DEBUG, a second
    handler lets DEBUG records through for those modules only. Returns the
    handler ids.
    """
    logger.remove()
    logger.configure(extra={"run_id": "-"})
    target = sink or sys.stderr

    handler_ids = [
        logger.add(target, level=level, format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]
    scopes = [scope for scope in debug_scopes if scope.strip()]
    if scopes and level.upper() != "DEBUG":
        handler_ids.append(
            logger.add(
                target,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=scope_filter(scopes),
            )
        )
    return tuple(handler_ids)
