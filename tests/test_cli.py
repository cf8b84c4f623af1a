"""Tests for the command line interface."""

import logging
import pytest
import tomli
from tomli_w import dump as tomli_w_dump
from unittest.mock import patch

from gseaperm.cli import main, parse_args, update_config

@pytest.fixture(autouse=True)
def restore_root_handlers():
    root = logging.getLogger()
    handlers = list(root.handlers)
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            handler.close()
            root.removeHandler(handler)

@pytest.fixture
def config_file(tmp_path):
    config = {
        'input': {'counts_file': 'counts.tsv', 'classes_file': 'classes.tsv', 'gmt_file': 'sets.gmt'},
        'output': {'directory': str(tmp_path / "results")},
        'analysis': {},
    }
    path = tmp_path / "config.toml"
    with open(path, 'wb') as f:
        tomli_w_dump(config, f)
    return path

def test_update_config_overrides():
    args = parse_args([
        "config.toml",
        "--gmt", "other.gmt",
        "--output-dir", "out",
        "--seed", "0",
        "--iterations", "50",
        "--gsea-jar", "gsea.jar",
        "--no-randomization",
        "--cytoscape",
    ])
    config = update_config({'input': {}, 'output': {}, 'analysis': {}}, args)

    assert config['input'] == {'gmt_file': 'other.gmt'}
    assert config['output']['directory'] == 'out'
    # Zero is a valid seed and must not be dropped
    assert config['analysis']['seed'] == 0
    assert config['randomization'] == {'run': False, 'iterations': 50}
    assert config['gsea'] == {'jar': 'gsea.jar'}
    assert config['cytoscape'] == {'run': True}

def test_update_config_no_overrides():
    args = parse_args(["config.toml"])
    config = update_config({'input': {'gmt_file': 'a.gmt'}, 'output': {}, 'analysis': {}}, args)
    assert config['input'] == {'gmt_file': 'a.gmt'}
    assert config['randomization'] == {}
    assert not args.aggregate_only

def test_main_runs_pipeline(config_file, tmp_path):
    captured = {}

    def fake_pipeline(path):
        with open(path, 'rb') as f:
            captured.update(tomli.load(f))
        return pipeline_instance

    with patch("gseaperm.cli.RandomizedEnrichmentPipeline") as pipeline_class:
        pipeline_instance = pipeline_class.return_value
        pipeline_class.side_effect = fake_pipeline
        main([str(config_file), "--iterations", "20"])

    pipeline_instance.run.assert_called_once()
    pipeline_instance.aggregate.assert_not_called()
    assert captured['randomization']['iterations'] == 20
    assert (tmp_path / "results" / "logs" / "pipeline.log").exists()
    assert not (tmp_path / "temp_config.toml").exists()

def test_main_aggregate_only(config_file):
    with patch("gseaperm.cli.RandomizedEnrichmentPipeline") as pipeline_class:
        main([str(config_file), "--aggregate-only"])
    pipeline_class.return_value.aggregate.assert_called_once()
    pipeline_class.return_value.run.assert_not_called()

def test_main_failure_exits(config_file, tmp_path):
    with patch("gseaperm.cli.RandomizedEnrichmentPipeline") as pipeline_class:
        pipeline_class.return_value.run.side_effect = RuntimeError("boom")
        with pytest.raises(SystemExit) as excinfo:
            main([str(config_file)])
    assert excinfo.value.code == 1
    assert not (tmp_path / "temp_config.toml").exists()

def test_main_bad_config(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main([str(tmp_path / "missing.toml")])
    assert excinfo.value.code == 1
