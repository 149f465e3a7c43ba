"""Tests for the bucketsync command-line interface."""

from pathlib import Path

import pytest
import yaml

from bucketsync.cli import apply_overrides, main, parse_args
from bucketsync.config import BucketSyncConfig


@pytest.fixture
def config_file(tmp_path) -> Path:
    """A config selecting a local bucket rooted under tmp_path."""
    path = tmp_path / "bucketsync.yaml"
    path.write_text(
        yaml.dump(
            {
                "logging": {"level": "WARNING"},
                "bucket": {
                    "backend": "local",
                    "name": "cli",
                    "local": {"root": str(tmp_path / "bucket")},
                },
            }
        )
    )
    return path


@pytest.fixture
def site(tmp_path) -> Path:
    root = tmp_path / "site"
    (root / "css").mkdir(parents=True)
    (root / "index.html").write_bytes(b"<html></html>")
    (root / "css" / "site.css").write_bytes(b"body {}")
    return root


class TestParseArgs:
    def test_defaults(self):
        args = parse_args(["check"])
        assert args.config == Path("bucketsync.yaml")
        assert args.log_level is None
        assert args.dry_run is False
        assert args.command == "check"

    def test_push_options(self):
        args = parse_args(["--dry-run", "push", "./site", "www", "--exclude", r"\.tmp$", "--delete"])
        assert args.dry_run is True
        assert args.local == "./site"
        assert args.remote == "www"
        assert args.exclude == r"\.tmp$"
        assert args.delete is True

    def test_rm_many_keys(self):
        args = parse_args(["rm", "a", "b", "c"])
        assert args.keys == ["a", "b", "c"]

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestApplyOverrides:
    def test_flags_override_config(self):
        config = BucketSyncConfig()
        apply_overrides(
            config,
            parse_args(["--verbose", "--dry-run", "--log-format", "json", "pull", "www", "out", "--delete"]),
        )
        assert config.bucket.verbose is True
        assert config.bucket.dry_run is True
        assert config.logging.format == "json"
        assert config.bucket.delete_on_pull is True
        assert config.bucket.delete_on_push is False


class TestMain:
    def test_push_then_ls(self, config_file, site, capsys):
        main(["--config", str(config_file), "push", str(site), "www"])
        capsys.readouterr()

        main(["--config", str(config_file), "ls", "www"])

        assert capsys.readouterr().out.splitlines() == ["www/css/site.css", "www/index.html"]

    def test_pull(self, config_file, site, tmp_path):
        main(["--config", str(config_file), "push", str(site), "www"])
        main(["--config", str(config_file), "pull", "www", str(tmp_path / "out")])
        assert (tmp_path / "out" / "css" / "site.css").read_bytes() == b"body {}"

    def test_dry_run_push_writes_nothing(self, config_file, site, tmp_path, capsys):
        main(["--config", str(config_file), "--dry-run", "push", str(site), "www"])
        main(["--config", str(config_file), "ls"])
        assert capsys.readouterr().out == ""

    def test_rm_prefix(self, config_file, site, capsys):
        main(["--config", str(config_file), "push", str(site), "www"])
        main(["--config", str(config_file), "rm-prefix", "www/css"])
        capsys.readouterr()
        main(["--config", str(config_file), "ls"])
        assert capsys.readouterr().out.splitlines() == ["www/index.html"]

    def test_check(self, config_file, capsys):
        main(["--config", str(config_file), "check"])
        assert capsys.readouterr().out.strip() == "cli: ok"

    def test_missing_config_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "nope.yaml"), "check"])
        assert exc_info.value.code == 1

    def test_failed_command_exits(self, config_file, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_file), "download", "missing", str(tmp_path / "x")])
        assert exc_info.value.code == 1

    def test_verbose_events_reach_stderr(self, config_file, tmp_path, capsys):
        source = tmp_path / "f.txt"
        source.write_bytes(b"x")

        main(["--config", str(config_file), "--verbose", "upload", str(source), "k"])

        err = capsys.readouterr().err
        assert "local upload on bucket cli" in err

    def test_metrics_written_to_textfile(self, tmp_path):
        prom = tmp_path / "bucketsync.prom"
        path = tmp_path / "metrics.yaml"
        path.write_text(
            yaml.dump(
                {
                    "logging": {"level": "WARNING"},
                    "metrics": {"enabled": True, "textfile": str(prom)},
                    "bucket": {
                        "backend": "local",
                        "name": "cli",
                        "local": {"root": str(tmp_path / "b")},
                    },
                }
            )
        )

        main(["--config", str(path), "check"])
        with pytest.raises(SystemExit):
            main(["--config", str(path), "download", "missing", str(tmp_path / "x")])

        text = prom.read_text()
        assert 'bucketsync_operations_total{operation="check",status="success"}' in text
        assert 'bucketsync_operations_total{operation="download",status="error"}' in text
