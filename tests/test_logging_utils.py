import logging

from zonekpi.logging_utils import log_safe, setup_logger


def test_log_safe_escapes_control_characters():
    assert log_safe("R0001") == "R0001"
    assert log_safe("R1\nERROR fake") == "R1\\nERROR fake"
    assert log_safe("a\r\tb\x1b[31m") == "a\\r\\tb\\x1b[31m"
    assert log_safe(None) == ""


def test_log_safe_caps_length():
    out = log_safe("x" * 500)
    assert out == "x" * 64 + "..."


def test_setup_logger_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    logger = setup_logger("zonekpi.test_setup", log_file, level=logging.DEBUG)
    logger.info("hello %s", log_safe("R1\nforged"))
    for h in logger.handlers:
        h.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "[INFO] hello R1\\nforged" in text
    assert len(text.strip().splitlines()) == 1

    # calling again does not stack handlers
    setup_logger("zonekpi.test_setup", log_file)
    assert len(logger.handlers) == 2
    for h in list(logger.handlers):
        h.close()
        logger.removeHandler(h)
