"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import shlex
import sys
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from ralph_loop.config import AgentSettings, LoopSettings, Settings

FAKE_AGENT_MODULE = "ralph_loop.process.fake_agent"

SAMPLE_DOCUMENT = """\
# Progress: Demo service

## Status

In Progress

## Analysis

Small HTTP service with a config loader.

## Tasks

### Setup

- [ ] Create project skeleton
- [ ] Add configuration loader

### Features

- [ ] Implement request parser

## Testing Strategy

pytest for every module.
"""

SINGLE_TASK_DOCUMENT = """\
# Progress: Tiny

## Status

In Progress

## Tasks

- [ ] Write hello world
"""

MUST_HAVE_DOCUMENT = """\
# Progress: Gated

## Status

In Progress

## Tasks

### Build

- [ ] Implement feature

## Must-Haves

### Truths

- [ ] Feature works end to end

### Artifacts

- [ ] README documents the feature
"""


@pytest.fixture(autouse=True)
def _clean_ralph_env(monkeypatch):
    """Keep host RALPH_LOOP_* variables out of every test."""
    for key in list(os.environ):
        if key.startswith("RALPH_LOOP_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def write_scenario(tmp_path: Path) -> Callable[..., Path]:
    """Write a fake agent scenario file and return its path."""

    counter = {"value": 0}

    def _write(*steps: dict[str, Any]) -> Path:
        counter["value"] += 1
        path = tmp_path / f"scenario-{counter['value']}.json"
        path.write_text(json.dumps({"steps": list(steps)}), "utf-8")
        return path

    return _write


@pytest.fixture()
def write_document(tmp_path: Path) -> Callable[..., Path]:
    def _write(text: str = SAMPLE_DOCUMENT, name: str = "PROGRESS.md") -> Path:
        path = tmp_path / name
        path.write_text(text, "utf-8")
        return path

    return _write


def fake_agent_args(scenario: Path) -> tuple[str, ...]:
    return ("-m", FAKE_AGENT_MODULE, "--scenario", str(scenario))


def fake_agent_settings(scenario: Path, **loop_overrides: Any) -> Settings:
    """Settings that run the fake agent with short timeouts."""

    agent_overrides = {
        key: loop_overrides.pop(key)
        for key in ("iteration_timeout_seconds", "grace_period_seconds", "command")
        if key in loop_overrides
    }
    agent = AgentSettings(
        command=sys.executable,
        base_args=fake_agent_args(scenario),
        iteration_timeout_seconds=30.0,
        grace_period_seconds=1.0,
    )
    return Settings(
        agent=replace(agent, **agent_overrides),
        loop=replace(LoopSettings(), **loop_overrides),
    )


def fake_agent_env(monkeypatch, scenario: Path) -> None:
    """Point the environment-driven settings at the fake agent."""

    monkeypatch.setenv("RALPH_LOOP_AGENT_COMMAND", sys.executable)
    monkeypatch.setenv(
        "RALPH_LOOP_AGENT_ARGS",
        shlex.join(fake_agent_args(scenario)),
    )
    monkeypatch.setenv("RALPH_LOOP_ITERATION_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("RALPH_LOOP_GRACE_PERIOD_SECONDS", "1")
