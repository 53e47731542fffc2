"""Test configuration and fixtures."""

import os

import pytest

from tests.helpers import (
    APP_ID,
    BASE_ID,
    CHANGE_ID,
    TOP_ID,
    Layer,
    write_export_dir,
    write_export_tar,
)


def standard_layers() -> list[Layer]:
    """A base image (rootfs ADD) with three application layers on top."""
    return [
        Layer(
            id=BASE_ID,
            cmd="#(nop) ADD file:0123abcd in /",
            entries={
                "etc/": None,
                "etc/os-release": b"ID=test\n",
                "etc/motd": b"hello\n",
                "bin/": None,
                "bin/sh": b"#!shell\n",
            },
        ),
        Layer(
            id=APP_ID,
            cmd="apt-get install app",
            entries={
                "app/": None,
                "app/config": b"v1\n",
                "app/cache/": None,
                "app/cache/a": b"a",
                "app/cache/b": b"b",
                "app/tmp": b"scratch",
            },
        ),
        Layer(
            id=CHANGE_ID,
            cmd="rm /app/tmp /etc/motd",
            entries={
                "app/": None,
                "app/.wh.tmp": b"",
                "app/config": b"v2\n",
                "etc/": None,
                "etc/.wh.motd": b"",
            },
        ),
        Layer(
            id=TOP_ID,
            cmd="#(nop) CMD [\"/app/run\"]",
            entries={},
            config={"Cmd": ["/app/run"], "Env": ["PATH=/bin"]},
        ),
    ]


@pytest.fixture
def layers():
    return standard_layers()


@pytest.fixture
def export_dir(tmp_path, layers):
    """An unpacked single-image export tagged test/app:latest."""
    return write_export_dir(
        tmp_path / "export", layers, {"test/app": {"latest": TOP_ID}}
    )


@pytest.fixture
def export_tar(tmp_path, layers):
    """The same export as a docker save archive."""
    return write_export_tar(
        tmp_path / "image.tar", layers, {"test/app": {"latest": TOP_ID}}
    )


def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")
    config.addinivalue_line("markers", "root: test needs root privileges")


def pytest_collection_modifyitems(config, items):
    """Skip tests that need root when running unprivileged."""
    skip_root = pytest.mark.skip(reason="needs root")
    is_root = hasattr(os, "geteuid") and os.geteuid() == 0

    for item in items:
        if "root" in item.keywords and not is_root:
            item.add_marker(skip_root)
