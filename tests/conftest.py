"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from infra.config import clear_settings_cache


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Each test sees settings rebuilt from its own (monkeypatched) env."""
    clear_settings_cache()
    yield
    clear_settings_cache()
