"""Run a Python module with its random number generators seeded.

The default app command goes through here so that a session's ``seed``
reaches the application's own interpreter::

    APPDRIVER_SEED=42 python -m appdriver.seeded shiny run app.py

Without ``APPDRIVER_SEED`` the module runs unseeded.
"""

from __future__ import annotations

import logging
import os
import random
import runpy
import sys

logger = logging.getLogger(__name__)

SEED_ENV = "APPDRIVER_SEED"


def seed_rngs(seed: int) -> None:
    """Seed ``random`` and, when installed, numpy's global generator."""
    random.seed(seed)
    try:
        import numpy
    except ImportError:
        return
    numpy.random.seed(seed % 2**32)


def main(argv: list[str] | None = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        sys.exit("usage: python -m appdriver.seeded MODULE [ARGS...]")
    raw = os.environ.get(SEED_ENV, "").strip()
    if raw:
        try:
            seed = int(raw)
        except ValueError:
            sys.exit(f"{SEED_ENV} must be an integer, got {raw!r}")
        seed_rngs(seed)
        logger.debug(f"Seeded random number generators with {seed}")
    module = argv[0]
    sys.argv = argv
    runpy.run_module(module, run_name="__main__", alter_sys=True)


if __name__ == "__main__":
    main()
