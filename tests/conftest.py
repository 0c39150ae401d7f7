"""
Shared fixtures for testfarm tests.
"""

import pytest

from testfarm.remote import HostDescriptor


@pytest.fixture
def host1():
    return HostDescriptor("host1", "alice")


@pytest.fixture
def host2():
    return HostDescriptor("host2", "alice")


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point every implicit config location at an empty temporary tree."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config-home"))
    monkeypatch.setenv("XDG_CONFIG_DIRS", str(tmp_path / "config-dirs"))
    monkeypatch.chdir(tmp_path)
    return tmp_path
