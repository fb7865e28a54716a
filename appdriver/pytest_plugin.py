"""pytest integration: the ``app_driver`` fixture.

Snapshot mismatches found by ``expect_*`` calls do not stop the test; they
are raised together once the test body has finished, so every other check
in the test still runs and reports.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from appdriver.driver import AppDriver
from appdriver.snapshot import snapshot_dir_for

DRIVERS_KEY = pytest.StashKey[list]()


def _default_app_dir(test_file: Path) -> Path | None:
    for parent in test_file.parents:
        if parent.name == "tests":
            return parent.parent
    return None


@pytest.fixture
def app_driver(request: pytest.FixtureRequest):
    """Factory fixture: ``app_driver(app_dir, **options)`` returns a started driver.

    Every driver created by the factory is stopped after the test.
    """
    drivers: list[AppDriver] = []
    request.node.stash[DRIVERS_KEY] = drivers

    def _factory(app_dir=None, **options) -> AppDriver:
        test_file = Path(request.path)
        if app_dir is None and "url" not in options:
            app_dir = _default_app_dir(test_file)
        if "snapshot_dir" not in options:
            options["snapshot_dir"] = str(snapshot_dir_for(test_file, options.get("variant")))
        driver = AppDriver(app_dir, **options)
        drivers.append(driver)
        return driver

    yield _factory
    for driver in drivers:
        driver.stop()


@pytest.hookimpl(wrapper=True)
def pytest_runtest_call(item: pytest.Item):
    result = yield
    for driver in item.stash.get(DRIVERS_KEY, []):
        driver.check_snapshots()
    return result
