"""Command line entry point: run an analysis from a configuration file."""

import os
import sys
import argparse

import matplotlib

matplotlib.use("Agg")

from .pipeline import load_config_file, run_complete_analysis  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="microarray_toolkit",
        description="Run a microarray differential expression analysis from a configuration file.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("config", help="Python configuration file (e.g. an exported *_config_*.py)")
    parser.add_argument(
        "--output-dir",
        default=".",
        help="Directory for plots, tables and the exported configuration",
    )
    args = parser.parse_args(argv)

    config = load_config_file(args.config)
    base_dir = os.path.dirname(os.path.abspath(args.config))
    run_complete_analysis(config, output_dir=args.output_dir, base_dir=base_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
