"""
Tests for the command line entry point.
"""

import pytest

from volume_swarm.cli import build_parser, load_config, main

from conftest import TOKEN


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("TOKEN_ADDRESS", "FUNDER_PRIVATE_KEY", "NUMBER_WALLETS", "THREADS", "DRY_RUN",
                 "RECLAIM_ON_EXIT", "KEY_EXPORT_FILE"):
        monkeypatch.delenv(name, raising=False)


class TestCli:

    def test_no_command_prints_help(self):
        assert main([]) == 1

    def test_run_arguments(self):
        args = build_parser().parse_args(["run", "--dry-run", "--wallets", "4", "--threads", "2", "--cycles", "10"])
        assert args.dry_run is True
        assert args.wallets == 4
        assert args.threads == 2
        assert args.cycles == 10

    def test_run_without_token_fails(self):
        assert main(["run"]) == 1

    def test_export_keys_argument(self, monkeypatch):
        monkeypatch.setenv("RECLAIM_ON_EXIT", "false")
        args = build_parser().parse_args(["run", "--export-keys", "./workers.json"])

        config = load_config(args)

        assert config.key_export_file == "./workers.json"
        assert config.reclaim_on_exit is False

    def test_run_without_reclaim_or_export_fails(self, monkeypatch):
        monkeypatch.setenv("TOKEN_ADDRESS", TOKEN)
        monkeypatch.setenv("FUNDER_PRIVATE_KEY", "0x" + "a" * 64)
        monkeypatch.setenv("RECLAIM_ON_EXIT", "false")

        assert main(["run"]) == 1

    def test_config_command(self, monkeypatch, capsys):
        monkeypatch.setenv("TOKEN_ADDRESS", TOKEN)
        monkeypatch.setenv("FUNDER_PRIVATE_KEY", "0x" + "a" * 64)

        assert main(["config"]) == 0

        out = capsys.readouterr().out
        assert "a" * 64 not in out

    def test_init_writes_config(self, tmp_path):
        path = tmp_path / "bot_config.yaml"
        assert main(["init", "--output", str(path)]) == 0
        assert "sell_delay_ms" in path.read_text()

        assert main(["init", "--output", str(path)]) == 1
        assert main(["init", "--output", str(path), "--force"]) == 0
