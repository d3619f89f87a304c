import json
from pathlib import Path

from click.testing import CliRunner

from signal_trader.main import cli
from signal_trader.types import CycleResult


def _isolate(monkeypatch: object, tmp_path: Path) -> Path:
    config_dir = tmp_path / "configs"
    config_dir.mkdir()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("COIN_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("MODE", "paper")
    monkeypatch.setattr("signal_trader.config._settings", None)
    return config_dir


def test_cli_once_smoke(monkeypatch: object, tmp_path: Path) -> None:
    _isolate(monkeypatch, tmp_path)

    def _fake_run_once(settings: object, dry_run: bool) -> list[CycleResult]:
        assert dry_run
        return [CycleResult(symbol="BTCUSDT", status="ok", elapsed_ms=1.0)]

    monkeypatch.setattr("signal_trader.main.run_once", _fake_run_once)
    runner = CliRunner()
    result = runner.invoke(cli, ["once", "--dry-run"])
    assert result.exit_code == 0


def test_cli_validate_config(monkeypatch: object, tmp_path: Path) -> None:
    config_dir = _isolate(monkeypatch, tmp_path)
    (config_dir / "BTCUSDT.json").write_text(
        json.dumps(
            {
                "symbol": "BTCUSDT",
                "analysisConfig": {"weights": {"trend": 1.0}, "moduleThresholds": {"trend": 50}},
            }
        ),
        encoding="utf-8",
    )
    runner = CliRunner()
    ok = runner.invoke(cli, ["validate-config", "BTCUSDT"])
    assert ok.exit_code == 0
    assert "[OK] BTCUSDT" in ok.output

    (config_dir / "ETHUSDT.json").write_text("{}", encoding="utf-8")
    bad = runner.invoke(cli, ["validate-config"])
    assert bad.exit_code == 1
    assert "[INVALID] ETHUSDT" in bad.output
