"""
Configuration file support for the cellmatrix CLI.

Supports YAML and JSON config files with CLI argument override.

Example config:
    ```yaml
    input: data/filtered_gene_bc_matrices/hg19
    output: results/pbmc
    qc:
      min_sum: 500
      min_detected: 200
      max_mito_percent: 10
      min_cells: 3
    reduction:
      n_hvg: 2000
      n_pcs: 20
      umap: true
    annotation:
      markers: markers/pbmc.yaml
    execution:
      n_jobs: 4
    ```
"""

import json
from argparse import Namespace
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict

import yaml

from cellmatrix.pipeline import (
    AnnotationConfig,
    NormalizationConfig,
    PipelineConfig,
    QCConfig,
    ReductionConfig,
)
from cellmatrix.preprocessing.normalization import ExecutionConfig

__all__ = ['load_config', 'config_from_dict', 'merge_config_with_args']

_SECTIONS = {
    'qc': QCConfig,
    'normalization': NormalizationConfig,
    'reduction': ReductionConfig,
    'annotation': AnnotationConfig,
    'execution': ExecutionConfig,
}

# CLI argument name -> (config section, field); None section = top level
_ARG_MAP = {
    'input': (None, 'input'),
    'output': (None, 'output'),
    'min_sum': ('qc', 'min_sum'),
    'min_detected': ('qc', 'min_detected'),
    'max_mito_percent': ('qc', 'max_mito_percent'),
    'mito_nmads': ('qc', 'mito_nmads'),
    'mito_prefix': ('qc', 'mito_prefix'),
    'min_cells': ('qc', 'min_cells'),
    'n_hvg': ('reduction', 'n_hvg'),
    'n_pcs': ('reduction', 'n_pcs'),
    'umap': ('reduction', 'umap'),
    'n_neighbors': ('reduction', 'n_neighbors'),
    'tsne': ('reduction', 'tsne'),
    'perplexity': ('reduction', 'perplexity'),
    'markers': ('annotation', 'markers'),
    'min_score': ('annotation', 'min_score'),
    'n_jobs': ('execution', 'n_jobs'),
}

_PATH_FIELDS = {'input', 'output', 'markers'}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def _section(cls, values: Any, name: str):
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown key(s) in config section '{name}': {unknown}")
    values = {k: Path(v) if k in _PATH_FIELDS and v is not None else v for k, v in values.items()}
    return cls(**values)


def config_from_dict(config: Dict[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a loaded config mapping.

    Raises:
        ValueError: On unknown sections/keys or invalid values
    """
    unknown = sorted(set(config) - set(_SECTIONS) - {'input', 'output'})
    if unknown:
        raise ValueError(f"Unknown top-level config key(s): {unknown}")

    sections = {name: _section(cls, config.get(name), name) for name, cls in _SECTIONS.items()}
    return PipelineConfig(
        input=Path(config['input']) if config.get('input') else None,
        output=Path(config['output']) if config.get('output') else None,
        **sections,
    )


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with a CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - Otherwise the config value (which already carries the default) is kept
    """
    if was_explicitly_set:
        return cli_value
    return config_value


def merge_config_with_args(config: Dict[str, Any], args: Namespace) -> PipelineConfig:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments (any value other than None)
    2. Config file values
    3. Dataclass defaults

    Overridable CLI flags therefore default to None.
    """
    merged = config_from_dict(config)

    for arg_name, (section, field_name) in _ARG_MAP.items():
        cli_value = getattr(args, arg_name, None)
        target = merged if section is None else getattr(merged, section)
        value = _merge_value(cli_value, getattr(target, field_name), cli_value is not None)
        if field_name in _PATH_FIELDS and value is not None:
            value = Path(value)
        setattr(target, field_name, value)

    # Re-run dataclass validation on merged values
    merged.qc.thresholds()
    ExecutionConfig(**{f.name: getattr(merged.execution, f.name) for f in fields(ExecutionConfig)})

    return merged
