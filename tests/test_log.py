import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from camcal.log import ROOT_LOGGER_NAME, ColoredFormatter, get_logger  # noqa: E402


def test_logger_names_nest_under_package() -> None:
    assert get_logger().name == ROOT_LOGGER_NAME
    assert get_logger("camcal.estimator").name == "camcal.estimator"
    assert get_logger("cli").name == "camcal.cli"
    assert get_logger("cli").parent is logging.getLogger(ROOT_LOGGER_NAME)


def test_colored_formatter_leaves_record_untouched() -> None:
    record = logging.LogRecord("camcal.test", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
    text = ColoredFormatter(fmt="%(levelname)s %(message)s").format(record)

    assert "hello world" in text
    assert "\033[33m" in text
    assert record.levelname == "WARNING"
