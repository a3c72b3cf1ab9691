import pytest
from hyperliquid.utils import constants

from botdesk.config.config import LIVE, PAPER, Settings
from botdesk.config.per_instrument_config import load_instrument_overrides
from botdesk.config.strategy_config import StrategyConfig
from botdesk.core.models import AssetClass
from botdesk.core.timeframe import BarTimeFrame, TimeFrameUnit

KEY = "0x" + "11" * 32

_ENV_KEYS = [
    "HL_ENVIRONMENT", "HL_BASE_URL", "HL_DEX", "HL_PRIVATE_KEY", "HL_AGENT_KEY", "HL_USER_ADDRESS",
    "HL_LEVERAGE", "BOT_SYMBOLS", "BOT_SYMBOL", "BOT_BAR_UNIT", "BOT_BAR_COUNT", "BOT_AVERAGE_BARS",
    "BOT_WINDOW_BARS", "BOT_QUANTITY_SCALE", "BOT_PROFIT_PCT", "BOT_METRICS_TOKEN",
]


@pytest.fixture
def env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HL_PRIVATE_KEY", KEY)
    return monkeypatch


class TestSettings:
    def test_defaults_are_paper(self, env):
        cfg = Settings.load()

        assert cfg.environment == PAPER
        assert cfg.base_url == constants.TESTNET_API_URL
        assert cfg.symbols == ["BTC"]
        assert cfg.connection_context().is_live is False

    def test_live_maps_to_mainnet(self, env):
        env.setenv("HL_ENVIRONMENT", "LIVE")

        cfg = Settings.load()

        assert cfg.environment == LIVE
        assert cfg.base_url == constants.MAINNET_API_URL

    def test_symbols_list(self, env):
        env.setenv("BOT_SYMBOLS", "BTC, ETH ,xyz:TSLA,")

        assert Settings.load().symbols == ["BTC", "ETH", "xyz:TSLA"]

    def test_strategy_config(self, env):
        env.setenv("BOT_BAR_UNIT", "hours")
        env.setenv("BOT_BAR_COUNT", "4")
        env.setenv("BOT_AVERAGE_BARS", "30")
        env.setenv("BOT_WINDOW_BARS", "10")

        sc = Settings.load().strategy_config()

        assert sc.timeframe == BarTimeFrame(4, TimeFrameUnit.HOUR)
        assert (sc.average_bars, sc.window_bars) == (30, 10)

    @pytest.mark.parametrize("key,value", [
        ("HL_ENVIRONMENT", "staging"),
        ("HL_LEVERAGE", "0"),
        ("BOT_BAR_UNIT", "fortnight"),
        ("BOT_WINDOW_BARS", "0"),
        ("BOT_PROFIT_PCT", "-1"),
    ])
    def test_invalid_values(self, env, key, value):
        env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_hides_secrets(self, env):
        env.setenv("BOT_METRICS_TOKEN", "s3cret")

        dumped = Settings.load().dump()

        assert dumped["private_key"] == "***"
        assert dumped["metrics_token"] == "***"

    def test_account_from_private_key(self, env):
        from eth_account import Account

        cfg = Settings.load()

        assert cfg.resolve_account() == Account.from_key(KEY).address
        assert cfg.resolve_signer().address == Account.from_key(KEY).address

    def test_explicit_user_address_wins(self, env):
        env.setenv("HL_USER_ADDRESS", "0xabc")

        assert Settings.load().connection_context().account_address == "0xabc"


class TestStrategyConfigOverrides:
    def test_overrides(self):
        base = StrategyConfig()

        cfg = base.with_overrides({
            "bar_unit": "day",
            "quantity_scale": "0.25",
            "asset_classes": ["crypto"],
            "window_bars": 5,
        })

        assert cfg.timeframe == BarTimeFrame(1, TimeFrameUnit.DAY)
        assert cfg.quantity_scale == 0.25
        assert cfg.asset_classes == frozenset({AssetClass.CRYPTO})
        assert cfg.window_bars == 5
        assert base.window_bars == 20

    def test_unknown_key_ignored(self):
        cfg = StrategyConfig().with_overrides({"leverage": 10, "timeframe": "1h"})

        assert cfg == StrategyConfig()

    def test_invalid_override_rejected(self):
        with pytest.raises(ValueError):
            StrategyConfig().with_overrides({"quantity_scale": 0})


class TestInstrumentOverrides:
    def test_load(self, tmp_path):
        path = tmp_path / "instruments.yaml"
        path.write_text("BTC:\n  quantity_scale: 0.01\nxyz:TSLA:\n  bar_unit: hour\nbad: 3\n")

        data = load_instrument_overrides(str(path))

        assert data == {"BTC": {"quantity_scale": 0.01}, "xyz:TSLA": {"bar_unit": "hour"}}

    def test_missing_file(self, tmp_path):
        assert load_instrument_overrides(str(tmp_path / "absent.yaml")) == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("BTC: [unclosed\n")

        assert load_instrument_overrides(str(path)) == {}
