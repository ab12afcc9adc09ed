"""Tests for analysis configuration and the command-line interface."""

import argparse
import json

import pandas as pd
import pytest
import yaml

from taxadiff.cli import main
from taxadiff.cli import differential as differential_cli
from taxadiff.cli._validators import _cooks_cutoff, _field_equals_value, _nonzero_int
from taxadiff.config import AnalysisConfig, load_config, merge_overrides
from taxadiff.stats.design_matrix import Contrast


def _parse(argv):
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="command")
    differential_cli.setup_parser(subparsers)
    return parser.parse_args(["differential", *argv])


def _input_args(files):
    return [
        "--feature-table", str(files["feature_table"]),
        "--taxonomy", str(files["taxonomy"]),
        "--tree", str(files["tree"]),
        "--metadata", str(files["metadata"]),
    ]


class TestAnalysisConfig:
    """Tests for AnalysisConfig construction and validation."""

    def test_defaults(self):
        config = AnalysisConfig.from_dict({})
        assert config.filter.count_threshold == 5
        assert config.filter.prevalence == 0.5
        assert config.significance.alpha == 0.01
        assert config.significance.lfc_threshold == 1.0
        assert config.model.cooks_cutoff is False
        assert config.model.size_factor_method == "ratio"
        assert config.strict_metadata is True
        assert config.model.contrast is None

    def test_design_derived_from_contrast(self):
        config = AnalysisConfig.from_dict({"model": {"contrast": ["Description", "Rhizosphere", "Bulk"]}})
        assert config.model.contrast == Contrast("Description", "Rhizosphere", "Bulk")
        assert config.model.design == "~ Description"

    def test_design_contrast_mismatch(self):
        with pytest.raises(ValueError, match="not the design factor"):
            AnalysisConfig.from_dict({"model": {"design": "~ Source", "contrast": ["Description", "A", "B"]}})

    @pytest.mark.parametrize("data", [
        {"outputs": "x"},
        {"filter": {"prevalance": 0.5}},
        {"model": {"size_factor_method": "tmm"}},
        {"model": {"n_jobs": 0}},
        {"significance": {"alpha": 1.5}},
        {"filter": {"prevalence": 0}},
    ])
    def test_invalid(self, data):
        with pytest.raises(ValueError):
            AnalysisConfig.from_dict(data)

    @pytest.mark.parametrize("value", ["false", "no", 0, None])
    def test_strict_metadata_must_be_bool(self, value):
        with pytest.raises(ValueError, match="strict_metadata"):
            AnalysisConfig.from_dict({"strict_metadata": value})

    def test_strict_metadata_false(self):
        assert AnalysisConfig.from_dict({"strict_metadata": False}).strict_metadata is False

    def test_quoted_yaml_false_rejected(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text('strict_metadata: "false"\n')
        with pytest.raises(ValueError, match="strict_metadata"):
            AnalysisConfig.from_file(path)

    def test_round_trip(self, tmp_path):
        data = {
            "inputs": {"feature_table": str(tmp_path / "t.biom"), "taxonomy": "tax.tsv", "metadata": "m.tsv"},
            "filter": {"select": {"Source": "Agr"}, "prevalence": 0.25},
            "model": {"contrast": ["Description", "Rhizosphere", "Bulk"], "cooks_cutoff": True},
            "output": str(tmp_path / "out"),
        }
        config = AnalysisConfig.from_dict(data)
        again = AnalysisConfig.from_dict(config.to_dict())
        assert again.to_dict() == config.to_dict()
        json.dumps(config.to_dict())

    def test_require(self):
        config = AnalysisConfig.from_dict({})
        with pytest.raises(ValueError, match="feature_table"):
            config.inputs.require()
        with pytest.raises(ValueError, match="contrast"):
            config.model.require()


class TestLoadConfig:

    def test_yaml(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({"significance": {"alpha": 0.05}}))
        config = AnalysisConfig.from_file(path)
        assert config.significance.alpha == 0.05

    def test_json(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps({"filter": {"count_threshold": 2}}))
        assert load_config(path) == {"filter": {"count_threshold": 2}}

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "analysis.yml"
        path.write_text("")
        assert load_config(path) == {}

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "analysis.toml"
        path.write_text("a = 1")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(path)

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")


class TestMergeOverrides:

    def test_explicit_value_wins(self):
        merged = merge_overrides({"significance": {"alpha": 0.05}}, {"significance.alpha": 0.001})
        assert merged["significance"]["alpha"] == 0.001

    def test_none_keeps_file_value(self):
        merged = merge_overrides({"significance": {"alpha": 0.05}}, {"significance.alpha": None})
        assert merged["significance"]["alpha"] == 0.05

    def test_base_not_modified(self):
        base = {"filter": {"prevalence": 0.5}}
        merge_overrides(base, {"filter.prevalence": 0.2, "output": "out"})
        assert base == {"filter": {"prevalence": 0.5}}


class TestValidators:

    def test_cooks_cutoff(self):
        assert _cooks_cutoff("off") is False
        assert _cooks_cutoff("auto") is True
        assert _cooks_cutoff("2.5") == 2.5
        with pytest.raises(argparse.ArgumentTypeError):
            _cooks_cutoff("-1")
        with pytest.raises(argparse.ArgumentTypeError):
            _cooks_cutoff("sometimes")

    def test_field_equals_value(self):
        assert _field_equals_value("Source=Agr") == ("Source", "Agr")
        assert _field_equals_value("Depth=") == ("Depth", "")
        with pytest.raises(argparse.ArgumentTypeError):
            _field_equals_value("Source")

    def test_nonzero_int(self):
        assert _nonzero_int("-1") == -1
        with pytest.raises(argparse.ArgumentTypeError):
            _nonzero_int("0")


class TestBuildConfig:
    """Tests for command-line > config file > default precedence."""

    def test_config_file_then_cli(self, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump({
            "significance": {"alpha": 0.05, "lfc_threshold": 2.0},
            "model": {"contrast": ["Description", "Rhizosphere", "Bulk"]},
        }))
        config = differential_cli.build_config(_parse(["--config", str(path), "--alpha", "0.001"]))
        assert config.significance.alpha == 0.001
        assert config.significance.lfc_threshold == 2.0
        assert config.filter.prevalence == 0.5

    def test_select_and_lenient(self):
        args = _parse([
            "--select", "Source=Agr", "--select", "EnvFeature=Pot",
            "--contrast", "Description", "Rhizosphere", "Bulk",
            "--lenient-metadata", "--cooks-cutoff", "auto",
        ])
        config = differential_cli.build_config(args)
        assert config.filter.select == {"Source": "Agr", "EnvFeature": "Pot"}
        assert config.strict_metadata is False
        assert config.model.cooks_cutoff is True

    def test_out_of_range_alpha_rejected(self):
        with pytest.raises(SystemExit):
            _parse(["--alpha", "2"])


class TestMain:
    """End-to-end command-line runs."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "differential" in capsys.readouterr().out

    def test_differential_run(self, exported_files, tmp_path, capsys):
        out = tmp_path / "results"
        code = main([
            "differential", *_input_args(exported_files),
            "--select", "Source=Agr",
            "--contrast", "Description", "Rhizosphere", "Bulk",
            "--output", str(out),
            "--no-plot",
        ])
        assert code == 0
        assert "Significant" in capsys.readouterr().out

        significant = pd.read_csv(out / "significant.csv")
        assert significant["feature_id"].tolist() == ["F01"]
        assert (out / "results.csv").exists()
        assert (out / "chart_points.csv").exists()
        assert not (out / "fold_changes.png").exists()

        summary = json.loads((out / "run_summary.json").read_text())
        assert summary["contrast"] == "Description_Rhizosphere_vs_Bulk"
        assert summary["stages"]["selected"]["n_samples"] == 4
        assert summary["results"]["n_significant"] == 1

    def test_unknown_contrast_level(self, exported_files, capsys):
        code = main([
            "differential", *_input_args(exported_files),
            "--select", "Source=Agr",
            "--contrast", "Description", "Rhizosphere", "Litter",
        ])
        assert code == 1
        assert "Error:" in capsys.readouterr().out

    def test_missing_inputs(self, capsys):
        code = main(["differential", "--contrast", "Description", "Rhizosphere", "Bulk"])
        assert code == 1
        assert "Missing input path" in capsys.readouterr().out
