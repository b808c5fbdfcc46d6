import sys

import pytest

sys.path.insert(0, '.')

from config import Config, SectionProxy, config
from config.utils import get_config_section


def test_default_config_has_trading_sections():
    for section in ('exchange', 'universe', 'trading', 'risk', 'rating', 'monitoring'):
        assert get_config_section(config, section)
    assert config.exchange.quote_asset == 'USDT'
    assert isinstance(config['rating'], SectionProxy)


def test_env_placeholders_are_expanded(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  api_key: ${TEST_GLICKO_KEY}\n"
        "  api_secret: ${TEST_GLICKO_MISSING}\n"
        "  tags: [a, \"${TEST_GLICKO_KEY}\"]\n"
    )
    monkeypatch.setenv('TEST_GLICKO_KEY', 'abc123')
    monkeypatch.delenv('TEST_GLICKO_MISSING', raising=False)

    cfg = Config(str(path))
    exchange = get_config_section(cfg, 'exchange')
    assert exchange['api_key'] == 'abc123'
    assert exchange['api_secret'] is None
    assert exchange['tags'] == ['a', 'abc123']


def test_missing_or_invalid_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'absent.yaml'))
    bad = tmp_path / 'bad.yaml'
    bad.write_text("key: [unclosed\n")
    with pytest.raises(RuntimeError):
        Config(str(bad))


def test_get_config_section_accepts_plain_dicts():
    assert get_config_section({'risk': {'max_drawdown': 0.1}}, 'risk') == {'max_drawdown': 0.1}
    assert get_config_section({'risk': 5}, 'risk') == {}
    assert get_config_section(None, 'risk') == {}
