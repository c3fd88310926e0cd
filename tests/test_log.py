import io
import logging

import colorlog
import pytest

from remisim.log import setup_logging


@pytest.fixture
def root_logger():
    """Restore the root logger's handlers and level afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_installs_one_colored_handler(root_logger):
    buf = io.StringIO()
    setup_logging("debug", stream=buf)
    setup_logging("DEBUG", stream=buf)

    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, colorlog.ColoredFormatter)

    logging.getLogger("remisim.simulate").warning("degraded fixed-step mode")
    text = buf.getvalue()
    assert "WARNING" in text
    assert "remisim.simulate" in text
    assert "degraded fixed-step mode" in text


def test_unknown_level(root_logger):
    with pytest.raises(ValueError):
        setup_logging("LOUD")
