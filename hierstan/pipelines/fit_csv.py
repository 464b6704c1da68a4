# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fits a hierarchical regression model to the contents of a CSV file.

Installed as the ``hierstan-fit`` console script:

    hierstan-fit --data epilepsy.csv --formula "count ~ age + (1 | patient)" \\
        --family poisson --chains 4 --future --file fits/epilepsy
"""

import argparse
import logging
import os.path

import pandas as pd

from hierstan import defaults
from hierstan.model.families import available_families
from hierstan.model.fitting import fit_model


def define_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Fit a Bayesian hierarchical regression model with Stan."
    )
    parser.add_argument(
        "--data", type=str, required=True, help="Path to a CSV file holding the data."
    )
    parser.add_argument(
        "--formula",
        type=str,
        required=True,
        help="Model formula, e.g. 'y ~ x + (1 | g)'.",
    )
    parser.add_argument(
        "--family",
        type=str,
        default="gaussian",
        choices=available_families(),
        help="Response family. Default = gaussian.",
    )
    parser.add_argument(
        "--algorithm",
        type=str,
        default=defaults.DEFAULT_ALGORITHM,
        choices=defaults.ALGORITHMS,
        help=f"Estimation algorithm. Default = {defaults.DEFAULT_ALGORITHM}.",
    )
    parser.add_argument(
        "--chains",
        type=int,
        default=defaults.DEFAULT_CHAINS,
        help=f"Number of chains. Default = {defaults.DEFAULT_CHAINS}.",
    )
    parser.add_argument(
        "--iter",
        type=int,
        default=defaults.DEFAULT_ITER,
        help=(
            "Number of iterations per chain, warmup included. "
            f"Default = {defaults.DEFAULT_ITER}."
        ),
    )
    parser.add_argument(
        "--warmup",
        type=int,
        default=None,
        help="Number of warmup iterations per chain. Default = half of --iter.",
    )
    parser.add_argument(
        "--cores",
        type=int,
        default=None,
        help="Number of cores for running chains in parallel. Default = 1.",
    )
    parser.add_argument(
        "--future",
        action="store_true",
        help="Run every chain as an independent future.",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed.")
    parser.add_argument(
        "--file",
        type=str,
        default=None,
        help="Path the fit is loaded from if it exists and stored to otherwise.",
    )
    parser.add_argument(
        "--output_dir",
        type=str,
        default=None,
        help=(
            "Directory for Stan programs and executables. "
            f"Default = {defaults.DEFAULT_OUTPUT_DIR}."
        ),
    )
    parser.add_argument(
        "--save_model",
        type=str,
        default=None,
        help="Path the generated Stan program is written to.",
    )
    parser.add_argument(
        "--summary",
        type=str,
        default=None,
        help="Path of a CSV file receiving the posterior summary.",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Show progress and log messages."
    )
    return parser


def check_args(args: argparse.Namespace) -> None:
    """Check the arguments for the pipeline."""
    if not os.path.isfile(args.data):
        raise FileNotFoundError(f"Data file '{args.data}' does not exist.")
    for attr in ("chains", "iter"):
        if getattr(args, attr) <= 0:
            raise ValueError(f"{attr} must be greater than 0.")


def run_fit(args: argparse.Namespace):
    """Fit the model described by the arguments and report the posterior."""
    data = pd.read_csv(args.data)
    fit = fit_model(
        formula=args.formula,
        data=data,
        family=args.family,
        algorithm=args.algorithm,
        chains=args.chains,
        iter=args.iter,
        warmup=args.warmup,
        cores=args.cores,
        future=args.future or None,
        seed=args.seed,
        file=args.file,
        output_dir=args.output_dir,
        save_model=args.save_model,
        silent=not args.verbose,
    )

    summary = fit.summary()
    print(summary.to_string(float_format=lambda value: f"{value:.3f}"))
    if args.summary is not None:
        summary.to_csv(args.summary)
    return fit


def main(argv=None):
    """Main function to run the pipeline."""
    # Parse and check the arguments
    args = define_parser().parse_args(argv)
    check_args(args)

    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    # Run the pipeline
    run_fit(args)


if __name__ == "__main__":
    main()
