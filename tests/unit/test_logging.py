"""Unit tests for flowcore logging module."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator

import pytest

from flowcore.core.logging import ColoredFormatter, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from flowcore.core import logging as flowcore_logging

    original = flowcore_logging._default_level
    yield
    set_default_level(original)


def _unique_component() -> str:
    return f'test_{uuid.uuid4().hex[:8]}'


class TestSetDefaultLevel:
    """Tests for set_default_level()."""

    def test_changes_module_variable(self) -> None:
        from flowcore.core import logging as flowcore_logging

        set_default_level(logging.DEBUG)
        assert flowcore_logging._default_level == logging.DEBUG

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        logger = get_logger(_unique_component())
        assert logger.level == logging.WARNING
        for handler in logger.handlers:
            assert handler.level == logging.WARNING


class TestGetLogger:
    """Tests for get_logger()."""

    def test_namespaced_under_flowcore(self) -> None:
        name = _unique_component()
        assert get_logger(name).name == f'flowcore.{name}'

    def test_does_not_propagate(self) -> None:
        assert get_logger(_unique_component()).propagate is False

    def test_handler_added_once(self) -> None:
        name = _unique_component()
        get_logger(name)
        logger = get_logger(name)
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, ColoredFormatter)


class TestColoredFormatter:
    """Tests for ColoredFormatter output."""

    def test_includes_component_level_and_message(self) -> None:
        record = logging.LogRecord(
            name='flowcore.resolver',
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg='Rejected %s',
            args=('fork',),
            exc_info=None,
        )
        out = ColoredFormatter().format(record)
        assert '[resolver]' in out
        assert '[WARNING]' in out
        assert 'Rejected fork' in out
