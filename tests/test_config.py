# File: tests/test_config.py
import textwrap
from pathlib import Path

import pytest

from site_indexer.utils.config import ConfigManager, load_config, parse_config, validate_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_load_config_fills_defaults(tmp_path):
    path = write_config(tmp_path, """
        indexing:
          sites:
            - url: https://example.com
              name: Example
          stop_grace_period: 2.5
        database:
          type: memory
    """)

    config = load_config(str(path))

    assert [site.url for site in config.indexing.sites] == ["https://example.com"]
    assert config.indexing.parallelism is None
    assert config.indexing.stop_grace_period == 2.5
    assert config.database.type == "memory"
    assert config.saver.batch_size == 100
    assert config.redis.enabled is False
    assert config.fetcher.user_agent == "SiteIndexerBot/1.0"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigManager(str(tmp_path / "absent.yaml")).load_config()


def test_non_mapping_document_is_rejected(tmp_path):
    path = write_config(tmp_path, "- just\n- a list\n")

    with pytest.raises(ValueError, match="mapping"):
        ConfigManager(str(path)).load_config()


def test_config_property_requires_load():
    with pytest.raises(ValueError):
        ConfigManager("config.yaml").config


def test_unknown_keys_are_rejected():
    with pytest.raises(TypeError):
        parse_config({'indexing': {'sites': [], 'threads': 4}})


@pytest.mark.parametrize("data, message", [
    ({'indexing': {'sites': []}}, "At least one site"),
    ({'indexing': {'sites': [{'url': 'ftp://example.com', 'name': 'x'}]}}, "http"),
    ({'indexing': {'sites': [{'url': 'http://site.test', 'name': 'a'},
                            {'url': 'HTTP://Site.test/', 'name': 'b'}]}}, "Duplicate site URL"),
    ({'indexing': {'parallelism': 0}}, "parallelism"),
    ({'indexing': {'stop_grace_period': -1}}, "stop_grace_period"),
    ({'fetcher': {'max_concurrent_requests': 0}}, "max_concurrent_requests"),
    ({'saver': {'batch_size': 0}}, "batch_size"),
    ({'saver': {'retry_attempts': -1}}, "retry_attempts"),
    ({'database': {'type': 'sqlite'}}, "Database type"),
])
def test_validation_errors(data, message):
    base = {'indexing': {'sites': [{'url': 'https://example.com', 'name': 'Example'}]}}
    for section, values in data.items():
        base.setdefault(section, {}).update(values)

    with pytest.raises(ValueError, match=message):
        validate_config(parse_config(base))


def test_shipped_example_config_is_valid():
    config = ConfigManager(str(EXAMPLE_CONFIG)).load_config()

    assert config.indexing.sites
    assert config.indexing.stop_grace_period == 5.0


def test_sites_under_distinct_paths_of_one_host_are_allowed():
    config = parse_config({'indexing': {'sites': [
        {'url': 'http://site.test/blog', 'name': 'Blog'},
        {'url': 'http://site.test/shop/', 'name': 'Shop'},
    ]}})

    validate_config(config)
