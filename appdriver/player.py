"""Replay recorded interaction traces against an AppDriver.

Trace JSON format::

    {
        "name": "slider",
        "options": {"seed": 42},
        "steps": [
            {"type": "set_inputs", "inputs": {"n": 7}},
            {"type": "click", "selector": "#go"},
            {"type": "wait_for_value", "name": "result"},
            {"type": "expect_values", "name": "after-go"},
            {"type": "expect_screenshot"},
            {"type": "wait", "ms": 250}
        ]
    }

Each step maps onto one driver command; its remaining keys are the
command's keyword arguments.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from appdriver.driver import AppDriver
from appdriver.errors import ConfigError

logger = logging.getLogger(__name__)

# step type -> (driver method, required keys)
STEP_TYPES: dict[str, tuple[str, tuple[str, ...]]] = {
    "set_inputs": ("set_inputs", ("inputs",)),
    "click": ("click", ("selector",)),
    "run_js": ("run_js", ("code",)),
    "wait_for_idle": ("wait_for_idle", ()),
    "wait_for_value": ("wait_for_value", ("name",)),
    "wait_for_js": ("wait_for_js", ("script",)),
    "set_window_size": ("set_window_size", ("width", "height")),
    "expect_values": ("expect_values", ()),
    "expect_screenshot": ("expect_screenshot", ()),
    "expect_text": ("expect_text", ("selector",)),
    "expect_html": ("expect_html", ("selector",)),
    "expect_js": ("expect_js", ("code",)),
    "log": ("log_message", ("message",)),
    "wait": ("", ("ms",)),
}

# set_inputs options use a trailing underscore on the driver
_SET_INPUTS_OPTIONS = {
    "wait": "wait_",
    "timeout": "timeout_",
    "allow_no_input_binding": "allow_no_input_binding_",
    "priority": "priority_",
}


@dataclass
class Step:
    type: str
    args: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        detail = ", ".join(f"{k}={v!r}" for k, v in self.args.items())
        return f"{self.type}({detail})"


@dataclass
class Trace:
    name: str
    steps: list[Step]
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    index: int
    step: Step
    duration_ms: int
    result: Any = None


def parse_step(raw: dict[str, Any], index: int = 0) -> Step:
    if not isinstance(raw, dict) or "type" not in raw:
        raise ConfigError(f"Step {index}: expected an object with a 'type' key")
    args = {k: v for k, v in raw.items() if k not in ("type", "comment")}
    step_type = raw["type"]
    if step_type not in STEP_TYPES:
        raise ConfigError(
            f"Step {index}: unknown step type {step_type!r}; "
            f"expected one of {sorted(STEP_TYPES)}"
        )
    missing = [key for key in STEP_TYPES[step_type][1] if key not in args]
    if missing:
        raise ConfigError(f"Step {index} ({step_type}): missing {', '.join(missing)}")
    return Step(step_type, args)


def load_trace(source: str | Path | dict[str, Any]) -> Trace:
    """Load a trace from a JSON file or an already-parsed dict."""
    if isinstance(source, dict):
        data = source
        default_name = "trace"
    else:
        path = Path(source)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid trace file {path}: {e}") from e
        default_name = path.stem
    steps = data.get("steps")
    if not isinstance(steps, list):
        raise ConfigError("Trace must contain a 'steps' array")
    return Trace(
        name=data.get("name", default_name),
        steps=[parse_step(raw, i) for i, raw in enumerate(steps)],
        options=dict(data.get("options", {})),
    )


class ScriptPlayer:
    """Runs trace steps as driver commands, in order."""

    def __init__(self, driver: AppDriver):
        self.driver = driver

    def play(self, trace: Trace) -> list[StepResult]:
        self.driver.log_message(f"Replaying trace {trace.name!r} ({len(trace.steps)} steps)")
        results = []
        for i, step in enumerate(trace.steps):
            started = time.perf_counter()
            result = self.play_step(step)
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.debug(f"{i:03d}:{step.type} took {duration_ms}ms")
            results.append(StepResult(i, step, duration_ms, result))
        return results

    def play_step(self, step: Step) -> Any:
        args = dict(step.args)
        if step.type == "wait":
            time.sleep(args["ms"] / 1000.0)
            return None
        if step.type == "set_inputs":
            inputs = args.pop("inputs")
            options = {_SET_INPUTS_OPTIONS.get(k, k): v for k, v in args.items()}
            return self.driver.set_inputs(inputs, **options)
        method = getattr(self.driver, STEP_TYPES[step.type][0])
        return method(**args)


def render_test(trace: Trace, app_dir: str | None = None) -> str:
    """Python test source equivalent to replaying ``trace``."""
    func = "test_" + "".join(c if c.isalnum() else "_" for c in trace.name).strip("_").lower()
    options = dict(trace.options)
    if app_dir is not None:
        options["app_dir"] = app_dir
    call_args = ", ".join(f"{k}={v!r}" for k, v in options.items())
    lines = [
        f"def {func or 'test_trace'}(app_driver):",
        f"    app = app_driver({call_args})",
    ]
    for step in trace.steps:
        args = dict(step.args)
        if step.type == "wait":
            lines.append(f"    time.sleep({args['ms'] / 1000.0!r})")
            continue
        if step.type == "set_inputs":
            inputs = args.pop("inputs")
            extra = "".join(
                f", {_SET_INPUTS_OPTIONS.get(k, k)}={v!r}" for k, v in args.items()
            )
            lines.append(f"    app.set_inputs({inputs!r}{extra})")
            continue
        method = STEP_TYPES[step.type][0]
        rendered = ", ".join(f"{k}={v!r}" for k, v in args.items())
        lines.append(f"    app.{method}({rendered})")
    header = ["import time", "", ""] if any(s.type == "wait" for s in trace.steps) else []
    return "\n".join(header + lines) + "\n"
