import io
from datetime import datetime

from mcpwire.logger import StdLogger, default_logger


def test_info_prefix_and_formatting():
    buf = io.StringIO()
    logger = StdLogger(stream=buf, timestamps=False)
    logger.info("hello %s", "world")
    assert buf.getvalue() == "INFO: hello world\n"


def test_error_prefix_and_formatting():
    buf = io.StringIO()
    logger = StdLogger(stream=buf, timestamps=False)
    logger.error("failed: %d items", 3)
    assert buf.getvalue() == "ERROR: failed: 3 items\n"


def test_message_without_args_is_written_verbatim():
    buf = io.StringIO()
    logger = StdLogger(stream=buf, timestamps=False)
    logger.info("100% done")
    assert buf.getvalue() == "INFO: 100% done\n"


def test_no_double_newline():
    buf = io.StringIO()
    logger = StdLogger(stream=buf, timestamps=False)
    logger.info("line\n")
    assert buf.getvalue().count("\n") == 1


def test_timestamps_prefix_lines():
    buf = io.StringIO()
    logger = StdLogger(stream=buf)
    logger.error("boom")
    written = buf.getvalue()
    stamp, message = written[:19], written[19:]
    assert message == " ERROR: boom\n"
    parsed = datetime.strptime(stamp, "%Y/%m/%d %H:%M:%S")
    assert parsed.strftime("%Y/%m/%d %H:%M:%S") == stamp


def test_default_logger_writes_to_stderr(capsys):
    logger = default_logger()
    logger.info("value=%s", "x")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err.endswith("INFO: value=x\n")


def test_lines_accumulate_in_order():
    buf = io.StringIO()
    logger = StdLogger(stream=buf, timestamps=False)
    logger.info("first")
    logger.error("second")
    lines = buf.getvalue().splitlines()
    assert [line.split(": ", 1)[0] for line in lines] == ["INFO", "ERROR"]