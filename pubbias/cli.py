import argparse
import logging
from pathlib import Path

from pubbias import pipeline
from pubbias.exceptions import PubBiasError
from pubbias.plotting import tables
from pubbias.utils import config

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pubbias",
        description="Detect, adjust for and report publication bias in a multilevel meta-analytic dataset.",
    )
    parser.add_argument(
        "input_fp",
        nargs="?",
        type=Path,
        default=None,
        help="Delimited file of study records (defaults to the bundled example dataset)",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=config.default_config_fp, help="YAML configuration file"
    )
    parser.add_argument("-o", "--output-dir", type=Path, default=None, help="Directory for results")
    parser.add_argument("--delimiter", default=None, help="Field delimiter of the input file")
    parser.add_argument(
        "--measure", choices=["ROM", "SMD"], default=None, help="Effect size measure"
    )
    parser.add_argument(
        "--engine", choices=list(pipeline.ENGINES), default=None, help="Model fitting engine"
    )
    parser.add_argument("--level", type=float, default=None, help="Confidence level, e.g. 0.95")
    parser.add_argument(
        "--moderator",
        dest="extra_moderators",
        action="append",
        default=None,
        help="Extra moderator for the detection model (repeatable)",
    )
    parser.add_argument("--no-plots", action="store_true", help="Skip figure generation")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Do not print model summaries"
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        pipeline_config = pipeline.PipelineConfig.from_yaml(
            args.config,
            input_fp=args.input_fp,
            output_dir=args.output_dir,
            delimiter=args.delimiter,
            measure=args.measure,
            engine=args.engine,
            level=args.level,
            extra_moderators=args.extra_moderators,
            make_plots=False if args.no_plots else None,
        )
        results = pipeline.run_pipeline(pipeline_config)
        out_dir = pipeline.write_results(results)
    except PubBiasError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    if not args.quiet:
        for res in results.models.values():
            print(tables.model_summary_text(res), end="\n\n")
        print(results.comparison.to_string())
    print(f"\nResults written to {out_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
