"""Tests for configuration management."""

import pytest
import tomli
from tomli_w import dump as tomli_w_dump
from pathlib import Path
import tempfile
from gseaperm.config import PipelineConfig, GSEA_DEFAULTS

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)

def write_config(path, config):
    with open(path, 'wb') as f:
        tomli_w_dump(config, f)
    return path

@pytest.fixture
def minimal_config_file(tmp_path):
    """Create a minimal valid configuration file."""
    config = {
        'input': {
            'counts_file': 'counts.tsv',
            'classes_file': 'classes.tsv',
            'gmt_file': 'sets.gmt'
        },
        'output': {
            'directory': 'results'
        },
        'analysis': {}
    }
    return write_config(tmp_path / 'config.toml', config)

@pytest.fixture
def full_config_file(tmp_path):
    """Create a configuration file with all optional sections."""
    config = {
        'input': {
            'counts_file': 'counts.tsv',
            'classes_file': 'classes.tsv',
            'gmt_file': 'sets.gmt',
            'expression_file': 'expression.txt'
        },
        'output': {
            'directory': 'out'
        },
        'analysis': {
            'min_cpm': 0.5,
            'min_samples': 3,
            'seed': 7,
            'fdr_threshold': 0.1,
            'num_threads': 4
        },
        'gsea': {
            'jar': 'gsea.jar',
            'memory': '8g'
        },
        'randomization': {
            'iterations': 200,
            'denominator': 250
        },
        'cytoscape': {
            'run': True
        }
    }
    return write_config(tmp_path / 'config.toml', config)

def test_load_minimal_config(minimal_config_file):
    """Defaults fill every section that is not given."""
    config = PipelineConfig(minimal_config_file)
    assert config.id_column == 'gene'
    assert config.id_separator == '|'
    assert config.min_cpm == 1.0
    assert config.min_samples is None
    assert config.seed == 42
    assert config.num_threads >= 1
    assert config.gsea == GSEA_DEFAULTS
    assert config.randomization['run'] is True
    assert config.cytoscape['run'] is False
    assert config.edger['rscript'] == 'Rscript'

def test_load_full_config(full_config_file):
    """Test loading a configuration with optional parameters."""
    config = PipelineConfig(full_config_file)
    assert config.input_files['expression_file'] == 'expression.txt'
    assert config.min_cpm == 0.5
    assert config.min_samples == 3
    assert config.seed == 7
    assert config.fdr_threshold == 0.1
    assert config.num_threads == 4
    assert config.gsea['jar'] == 'gsea.jar'
    assert config.gsea['memory'] == '8g'
    # Keys not overridden keep their defaults
    assert config.gsea['permutations'] == GSEA_DEFAULTS['permutations']
    assert config.cytoscape['run'] is True
    assert config.cytoscape['qvalue'] == 0.05

def test_iterations_is_default_denominator(minimal_config_file):
    config = PipelineConfig(minimal_config_file)
    assert config.iterations == 1000
    assert config.fdr_denominator == 1000

def test_denominator_override(full_config_file):
    config = PipelineConfig(full_config_file)
    assert config.iterations == 200
    assert config.fdr_denominator == 250

def test_invalid_iterations(temp_dir):
    config = {
        'input': {'counts_file': 'c', 'classes_file': 'k', 'gmt_file': 'g'},
        'output': {},
        'analysis': {},
        'randomization': {'iterations': 0}
    }
    path = write_config(temp_dir / 'config.toml', config)
    with pytest.raises(ValueError, match="iterations"):
        PipelineConfig(path)

def test_missing_config_file(temp_dir):
    with pytest.raises(ValueError, match="does not exist"):
        PipelineConfig(temp_dir / 'nope.toml')

def test_invalid_toml(temp_dir):
    path = temp_dir / 'bad.toml'
    path.write_text("[input\ncounts_file = ")
    with pytest.raises(ValueError, match="Error loading configuration file"):
        PipelineConfig(path)

def test_missing_required_sections(temp_dir):
    path = write_config(temp_dir / 'config.toml', {'input': {}})
    with pytest.raises(ValueError, match="Missing required sections"):
        PipelineConfig(path)

def test_missing_required_input_files(temp_dir):
    config = {
        'input': {'counts_file': 'counts.tsv'},
        'output': {},
        'analysis': {}
    }
    path = write_config(temp_dir / 'config.toml', config)
    with pytest.raises(ValueError, match="classes_file, gmt_file"):
        PipelineConfig(path)

def test_get_output_path(minimal_config_file):
    config = PipelineConfig(minimal_config_file)
    assert config.get_output_path() == Path('results')
    assert config.get_output_path('plots') == Path('results') / 'plots'

def test_save_config_includes_defaults(minimal_config_file, temp_dir):
    """The saved configuration is the effective one, defaults included."""
    config = PipelineConfig(minimal_config_file)
    saved = temp_dir / 'saved.toml'
    config.save_config(saved)

    with open(saved, 'rb') as f:
        loaded = tomli.load(f)

    assert loaded['input']['gmt_file'] == 'sets.gmt'
    assert loaded['randomization']['iterations'] == 1000
    assert loaded['gsea']['main_class'] == 'xtools.gsea.GseaPreranked'
    # The saved file loads back as a valid configuration
    assert PipelineConfig(saved).iterations == 1000
