# File: tests/test_logger.py
import json
import logging

from site_indexer.utils.config import LoggingConfig
from site_indexer.utils.logger import JSONFormatter, get_crawler_logger, setup_logging


def test_adapter_prefixes_site_and_attaches_job_context(caplog):
    logger = get_crawler_logger("tests.logger", site="Blog", job_id="job-1")

    with caplog.at_level(logging.INFO, logger="tests.logger"):
        logger.info("crawl started")

    [record] = caplog.records
    assert record.getMessage() == "[Blog] crawl started"
    assert record.job_context == {'site': "Blog", 'job_id': "job-1"}


def test_page_events_carry_the_url(caplog):
    logger = get_crawler_logger("tests.logger", site="Blog")

    with caplog.at_level(logging.INFO, logger="tests.logger"):
        logger.log_page_event(logging.INFO, "http://site.test/a", "Failed to fetch")

    [record] = caplog.records
    assert record.job_context['url'] == "http://site.test/a"
    assert record.job_context['site'] == "Blog"


def test_json_formatter_flattens_job_context(caplog):
    logger = get_crawler_logger("tests.logger", site="Blog")

    with caplog.at_level(logging.INFO, logger="tests.logger"):
        logger.log_job_stat("pages_saved", 12)

    entry = json.loads(JSONFormatter().format(caplog.records[0]))
    assert entry['message'] == "[Blog] Stat: pages_saved = 12"
    assert entry['site'] == "Blog"
    assert entry['stat_value'] == 12
    assert entry['level'] == "INFO"


def test_setup_logging_writes_log_and_error_files(tmp_path):
    log_file = tmp_path / "logs" / "indexer.log"
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    setup_logging(LoggingConfig(level="DEBUG", file=str(log_file)))
    try:
        logging.getLogger("tests.logger").error("storage down")
        for handler in root.handlers:
            handler.flush()

        assert "storage down" in log_file.read_text()
        assert "storage down" in (log_file.parent / "errors.log").read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
