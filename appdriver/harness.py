"""Running an application's test directory and preparing its setup file."""

from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Iterable

import pytest

from appdriver.config import resolve_app_dir
from appdriver.errors import ConfigError

logger = logging.getLogger(__name__)

SETUP_FILE = "conftest.py"
SETUP_MARKER = "load_app_env"

SETUP_TEMPLATE = '''\
from pathlib import Path

from appdriver import load_app_env

# Objects defined by the app's support files are available to every test.
load_app_env(Path(__file__).resolve().parent.parent, globals())
'''


def support_files(app_dir: str | Path) -> list[Path]:
    """``global.py`` followed by ``support/*.py`` in name order."""
    app_dir = Path(app_dir)
    files = []
    global_file = app_dir / "global.py"
    if global_file.is_file():
        files.append(global_file)
    support_dir = app_dir / "support"
    if support_dir.is_dir():
        files.extend(sorted(p for p in support_dir.glob("*.py") if p.is_file()))
    return files


def load_app_env(
    app_dir: str | Path = "..", namespace: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Execute the app's support files and return the names they define.

    Later files see what earlier ones defined. When ``namespace`` is given
    (e.g. a conftest's ``globals()``) it is updated in place.
    """
    env: dict[str, Any] = {} if namespace is None else namespace
    for path in support_files(app_dir):
        logger.debug(f"Loading support file {path}")
        result = runpy.run_path(str(path), init_globals=env)
        env.update({k: v for k, v in result.items() if not k.startswith("__")})
    return env


def setup_file(app_dir: str | Path) -> Path:
    return Path(app_dir) / "tests" / SETUP_FILE


def verify_setup(app_dir: str | Path) -> Path:
    """Raise ``ConfigError`` unless the tests directory loads the app env."""
    path = setup_file(app_dir)
    if path.is_file() and SETUP_MARKER in path.read_text(encoding="utf-8"):
        return path
    problem = "is missing" if not path.is_file() else f"does not call {SETUP_MARKER}()"
    raise ConfigError(
        f"Setup file {path} {problem}. "
        f"Create it with: python -m appdriver setup {app_dir}"
    )


def write_setup_file(app_dir: str | Path) -> Path:
    """Create (or extend) ``tests/conftest.py`` so it calls ``load_app_env``."""
    path = setup_file(app_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(SETUP_TEMPLATE, encoding="utf-8")
        logger.info(f"Created {path}")
        return path
    existing = path.read_text(encoding="utf-8")
    if SETUP_MARKER in existing:
        return path
    separator = "" if existing.endswith("\n") or not existing else "\n"
    path.write_text(existing + separator + "\n" + SETUP_TEMPLATE, encoding="utf-8")
    logger.info(f"Added {SETUP_MARKER}() to {path}")
    return path


def test_app(
    app_dir: str | Path | None = None,
    filter: str | None = None,
    check_setup: bool = True,
    pytest_args: Iterable[str] = (),
) -> int:
    """Run pytest over ``<app_dir>/tests`` and return its exit code."""
    app_dir = resolve_app_dir(app_dir)
    tests_dir = app_dir / "tests"
    if not tests_dir.is_dir():
        raise ConfigError(f"No tests directory at {tests_dir}")
    if check_setup:
        verify_setup(app_dir)
    args = [str(tests_dir)]
    if filter:
        args.extend(["-k", filter])
    args.extend(pytest_args)
    logger.info(f"Running pytest {' '.join(args)}")
    return int(pytest.main(args))


test_app.__test__ = False
