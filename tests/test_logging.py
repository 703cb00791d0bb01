"""Tests for logging configuration."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
from loguru import logger

from squads_cli.logging import configure_logging


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    logger.remove()


def test_json_lines_lift_extra_fields(capsys: pytest.CaptureFixture[str]) -> None:
    """Structured fields appear at the top level of each JSON line."""
    configure_logging("INFO", json_output=True)

    logger.info("Access token renewed", extra={"scope": "graph", "expires_in": 3599})

    entry = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert entry["level"] == "INFO"
    assert entry["message"] == "Access token renewed"
    assert entry["scope"] == "graph"
    assert entry["expires_in"] == 3599
    assert "extra" not in entry


def test_level_filters_messages(capsys: pytest.CaptureFixture[str]) -> None:
    """Messages below the configured level are dropped."""
    configure_logging("WARNING", json_output=True)

    logger.info("quiet")
    logger.warning("loud")

    err = capsys.readouterr().err
    assert "quiet" not in err
    assert "loud" in err


def test_human_format_shows_fields(capsys: pytest.CaptureFixture[str]) -> None:
    """The interactive format appends key=value fields."""
    configure_logging("DEBUG")

    logger.debug("Using cached token", extra={"scope": "spaces"})

    err = capsys.readouterr().err
    assert "Using cached token" in err
    assert "scope=spaces" in err


def test_standard_logging_is_routed(capsys: pytest.CaptureFixture[str]) -> None:
    """Records from stdlib loggers such as httpx reach loguru."""
    configure_logging("INFO", json_output=True)

    logging.getLogger("httpx").info("HTTP Request: POST https://login.example.test")

    assert "HTTP Request" in capsys.readouterr().err
