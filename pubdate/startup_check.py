"""Import every runtime module up front so a broken deploy fails at boot."""

from __future__ import annotations

import importlib
from typing import Iterable

import structlog

logger = structlog.get_logger(__name__)

RUNTIME_MODULES: tuple[str, ...] = (
    "pubdate",
    "pubdate.services.engine",
    "pubdate.services.acquisition",
    "pubdate.services.browser",
    "pubdate.services.broker",
    "pubdate.services.worker",
    "pubdate.routes.api",
)


def verify_imports(modules: Iterable[str] = RUNTIME_MODULES) -> None:
    for name in modules:
        try:
            importlib.import_module(name)
        except Exception as exc:
            logger.error("startup.import_check", module=name, status="failed", error=str(exc))
            raise RuntimeError(f"Import failed for {name}: {exc}") from exc
        logger.info("startup.import_check", module=name, status="ok")
