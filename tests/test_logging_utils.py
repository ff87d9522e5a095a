import io
import logging

from contentfactory.logging_utils import configure_logging


def _reset_root_logger() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)


def test_environment_level_overrides_configured_level(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.setenv("CONTENTFACTORY_LOG_LEVEL", "debug")

    configure_logging("WARNING", force=True)

    assert logging.getLogger().level == logging.DEBUG
    _reset_root_logger()


def test_configure_logging_is_idempotent_and_uses_given_stream(monkeypatch) -> None:
    _reset_root_logger()
    monkeypatch.delenv("CONTENTFACTORY_LOG_LEVEL", raising=False)
    stream = io.StringIO()

    configure_logging("INFO", "%(levelname)s %(message)s", stream=stream, force=True)
    first_count = len(logging.getLogger().handlers)
    configure_logging("DEBUG")
    second_count = len(logging.getLogger().handlers)
    logging.getLogger("contentfactory.test").info("cycle started")

    assert first_count == second_count == 1
    assert logging.getLogger().level == logging.INFO
    assert stream.getvalue() == "INFO cycle started\n"
    _reset_root_logger()
