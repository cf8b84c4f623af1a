#!/usr/bin/env python3
"""
Command line interface for the randomized enrichment pipeline.
"""

import argparse
import logging
import sys
from pathlib import Path
import tomli
from tomli_w import dump
from .pipeline import RandomizedEnrichmentPipeline
from .utils import setup_logging

def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run edgeR + GSEA with a class-label randomization FDR estimate"
    )

    # Required arguments
    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    # Input file overrides
    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--counts",
        type=str,
        help="Override read count table path"
    )
    input_group.add_argument(
        "--classes",
        type=str,
        help="Override sample class table path"
    )
    input_group.add_argument(
        "--gmt",
        type=str,
        help="Override gene set (GMT) file path"
    )

    # Output configuration overrides
    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )
    output_group.add_argument(
        "--save-intermediate",
        action="store_true",
        help="Keep the edgeR and GSEA files of every randomization"
    )

    # Analysis parameter overrides
    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--min-cpm",
        type=float,
        help="Override CPM filtering threshold"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Override random seed"
    )
    analysis_group.add_argument(
        "--fdr-threshold",
        type=float,
        help="Override significance threshold"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of parallel randomization workers"
    )

    # GSEA parameter overrides
    gsea_group = parser.add_argument_group("GSEA parameter overrides")
    gsea_group.add_argument(
        "--gsea-jar",
        type=str,
        help="Override path to the GSEA jar"
    )
    gsea_group.add_argument(
        "--gsea-permutations",
        type=int,
        help="Override number of GSEA permutations for the real run"
    )

    # Randomization parameter overrides
    random_group = parser.add_argument_group("Randomization parameter overrides")
    random_group.add_argument(
        "--no-randomization",
        action="store_true",
        help="Reuse existing randomization results instead of running new ones"
    )
    random_group.add_argument(
        "--iterations",
        type=int,
        help="Override number of class-label randomizations"
    )
    random_group.add_argument(
        "--aggregate-only",
        action="store_true",
        help="Only recompute the empirical FDR from existing GSEA and randomization outputs"
    )

    # Cytoscape overrides
    cytoscape_group = parser.add_argument_group("Cytoscape overrides")
    cytoscape_group.add_argument(
        "--cytoscape",
        action="store_true",
        help="Build an Enrichment Map in a running Cytoscape"
    )
    cytoscape_group.add_argument(
        "--cytoscape-url",
        type=str,
        help="Override CyREST base URL"
    )

    return parser.parse_args(argv)

def update_config(config: dict, args: argparse.Namespace):
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis', 'gsea', 'randomization', 'cytoscape'):
        config.setdefault(section, {})

    # Input file overrides
    if args.counts:
        config['input']['counts_file'] = args.counts
    if args.classes:
        config['input']['classes_file'] = args.classes
    if args.gmt:
        config['input']['gmt_file'] = args.gmt

    # Output configuration overrides
    if args.output_dir:
        config['output']['directory'] = args.output_dir
    if args.save_intermediate:
        config['output']['save_intermediate'] = True

    # Analysis parameter overrides
    if args.min_cpm is not None:
        config['analysis']['min_cpm'] = args.min_cpm
    if args.seed is not None:
        config['analysis']['seed'] = args.seed
    if args.fdr_threshold is not None:
        config['analysis']['fdr_threshold'] = args.fdr_threshold
    if args.num_threads:
        config['analysis']['num_threads'] = args.num_threads

    # GSEA parameter overrides
    if args.gsea_jar:
        config['gsea']['jar'] = args.gsea_jar
    if args.gsea_permutations:
        config['gsea']['permutations'] = args.gsea_permutations

    # Randomization parameter overrides
    if args.no_randomization:
        config['randomization']['run'] = False
    if args.iterations:
        config['randomization']['iterations'] = args.iterations

    # Cytoscape overrides
    if args.cytoscape:
        config['cytoscape']['run'] = True
    if args.cytoscape_url:
        config['cytoscape']['base_url'] = args.cytoscape_url

    return config

def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    # Load and validate config file
    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    # Update config with command line overrides
    config = update_config(config, args)

    # Set up logging first, before any pipeline operations
    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs')

    logging.info("Starting randomized enrichment pipeline")
    logging.info(f"Using configuration file: {args.config_file}")

    # Save updated config to a temporary file
    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        pipeline = RandomizedEnrichmentPipeline(str(temp_config_path))
        if args.aggregate_only:
            pipeline.aggregate()
        else:
            pipeline.run()
        logging.info("Pipeline execution completed successfully")
    except Exception as e:
        logging.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()

if __name__ == "__main__":
    main()
