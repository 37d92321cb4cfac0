"""Unit tests for the racehero_etl.import_racehero CLI.

Uses click's CliRunner with settings and the pipeline patched; no database
or network access.
"""

from __future__ import annotations

import json
from unittest.mock import patch

from click.testing import CliRunner

from racehero_etl.config import Settings
from racehero_etl.import_racehero import main
from racehero_etl.shared import StageError

SETTINGS = Settings(
    api_base_url="https://api.example.test",
    organization="acme",
    api_username="user",
    api_password="pw",
)


class FakePipeline:
    instances = []

    def __init__(self, client, cache, keys, **kwargs):
        self.client = client
        self.cache = cache
        self.keys = keys
        self.kwargs = kwargs
        self.csv_only = None
        FakePipeline.instances.append(self)

    async def run(self, csv_only=False):
        self.csv_only = csv_only
        self.kwargs["counters"].stages_completed.append("csv_downloads")
        return self.kwargs["counters"]


def _invoke(args, settings=SETTINGS):
    runner = CliRunner()
    with patch("racehero_etl.import_racehero.load_settings", return_value=settings):
        return runner.invoke(main, args)


class TestMain:
    def setup_method(self):
        FakePipeline.instances.clear()

    def test_cache_mode_success(self, tmp_path):
        reports = tmp_path / "reports"
        with patch("racehero_etl.import_racehero.Pipeline", FakePipeline):
            result = _invoke([
                "--key-source", "cache",
                "--csv-only",
                "--output-dir", str(tmp_path / "json"),
                "--csv-dir", str(tmp_path / "csv"),
                "--batch-width", "4",
                "--run-id", "run-1",
                "--report-dir", str(reports),
            ])

        assert result.exit_code == 0, result.output
        assert "[run-1] Run complete" in result.output
        pipeline = FakePipeline.instances[0]
        assert pipeline.csv_only is True
        assert pipeline.kwargs["conn"] is None
        assert pipeline.kwargs["batch_width"] == 4
        assert pipeline.cache.path_for("run_csv", {"run_id": 1}) == tmp_path / "csv" / "1.csv"

        report = json.loads((reports / "run-1.json").read_text())
        assert report["mode"] == "csv_only"
        assert report["counters"]["stages_completed"] == ["csv_downloads"]

    def test_force_download_flag_overrides_env(self, tmp_path):
        with patch("racehero_etl.import_racehero.Pipeline", FakePipeline):
            result = _invoke([
                "--key-source", "cache",
                "--force-download",
                "--output-dir", str(tmp_path / "json"),
                "--report-dir", str(tmp_path / "reports"),
            ])
        assert result.exit_code == 0, result.output
        assert FakePipeline.instances[0].cache.force_refresh is True

    def test_missing_output_dir_exits_nonzero(self, tmp_path):
        result = _invoke([
            "--key-source", "cache",
            "--run-id", "run-2",
            "--report-dir", str(tmp_path / "reports"),
        ])
        assert result.exit_code == 1
        assert "JSON_OUTPUT_DIR" in result.output
        assert (tmp_path / "reports" / "run-2.json").exists()

    def test_missing_api_settings_exits_nonzero(self, tmp_path):
        result = _invoke(
            [
                "--key-source", "cache",
                "--output-dir", str(tmp_path / "json"),
                "--report-dir", str(tmp_path / "reports"),
            ],
            settings=Settings(),
        )
        assert result.exit_code == 1
        assert "API_BASE_URL" in result.output

    def test_stage_failure_exits_nonzero(self, tmp_path):
        with patch(
            "racehero_etl.import_racehero._run",
            side_effect=StageError("event_runs", RuntimeError("boom")),
        ):
            result = _invoke([
                "--run-id", "run-3",
                "--report-dir", str(tmp_path / "reports"),
            ])
        assert result.exit_code == 1
        assert "stage event_runs failed" in result.output

    def test_batch_width_must_be_positive(self):
        result = _invoke(["--batch-width", "0"])
        assert result.exit_code == 2
