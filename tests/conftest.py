from __future__ import annotations

import logging
from typing import Iterator

import pytest


@pytest.fixture(autouse=True)
def _reset_pgcrond_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("pgcrond")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
