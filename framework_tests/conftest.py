import pathlib as pl
import stat
import textwrap
import typing as tp

import pytest

pytest_plugins = ("pytester", "cluster_harness.pytest_plugins.harness_fixtures")


@pytest.fixture
def make_mock_cmd(tmp_path: pl.Path) -> tp.Callable[[str, str], pl.Path]:
    """Return a function that creates an executable shell script standing in for a CLI tool.

    Every invocation of the script is recorded, one line per invocation, in `<name>.calls`.
    """
    bindir = tmp_path / "mockbin"
    bindir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> pl.Path:
        script = bindir / name
        calls_log = bindir / f"{name}.calls"
        script.write_text(
            f'#!/bin/sh\necho "$*" >> "{calls_log}"\n{textwrap.dedent(body)}', encoding="utf-8"
        )
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make


@pytest.fixture
def read_mock_calls() -> tp.Callable[[pl.Path], list[str]]:
    """Return a function that lists recorded invocations of a mock script."""

    def _read(script: pl.Path) -> list[str]:
        calls_log = script.parent / f"{script.name}.calls"
        if not calls_log.exists():
            return []
        return calls_log.read_text(encoding="utf-8").splitlines()

    return _read
