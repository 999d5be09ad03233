from loguru import logger

from devman.logging_utils import configure_logging, current_session, session_context


def test_session_context_tags_log_records() -> None:
    configure_logging(level="DEBUG")
    sessions: list[str] = []
    logger.add(lambda message: sessions.append(message.record["extra"]["session"]), format="{message}")

    with session_context("telegram:alpha"):
        assert current_session() == "telegram:alpha"
        logger.info("inside")
    logger.info("outside")

    assert sessions == ["telegram:alpha", "-"]
