"""Argument handling and logging setup shared by scramble and scram_merge."""

from __future__ import annotations

import argparse
import sys
from typing import NoReturn

from loguru import logger

from alignment_merge import RunConfig

# htslib's compiled-in CRAM defaults, for help text only
DEFAULT_SEQS_PER_SLICE = 10_000
DEFAULT_SLICES_PER_CONTAINER = 1


class ScramArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad arguments."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        logger.error(f"{self.prog}: {message}")
        sys.exit(1)


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    Logs always go to stderr; stdout may carry SAM/BAM/CRAM output.
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


def add_codec_arguments(p: argparse.ArgumentParser) -> None:
    """Format, compression, CRAM and verbosity options common to both tools."""
    formats = p.add_argument_group("Formats")
    formats.add_argument(
        "-I",
        "--input-format",
        dest="input_format",
        default=None,
        help='Input format: "bam", "sam" or "cram" (default: from file extension)',
    )
    formats.add_argument(
        "-O",
        "--output-format",
        dest="output_format",
        default=None,
        help='Output format: "bam", "sam" or "cram" (default: from file extension, else SAM)',
    )

    compression = p.add_argument_group("Compression")
    for level in range(10):
        compression.add_argument(
            f"-{level}",
            dest="compression_level",
            action="store_const",
            const=level,
            help=argparse.SUPPRESS,
        )
    compression.add_argument(
        "-u",
        dest="compression_level",
        action="store_const",
        const=0,
        help="No compression (same as -0). Use -1 to -9 to set the zlib level.",
    )
    compression.add_argument(
        "-l",
        "--level",
        dest="compression_level",
        type=int,
        default=None,
        help="Compression level 0-9",
    )

    cram = p.add_argument_group("CRAM")
    cram.add_argument(
        "-R",
        "--range",
        dest="region",
        default=None,
        help="Only process records overlapping refseq[:start[-end]] (inputs must be indexed)",
    )
    cram.add_argument(
        "-r",
        "--reference",
        dest="reference",
        default=None,
        help="Reference FASTA for reading and writing CRAM",
    )
    cram.add_argument(
        "-s",
        "--seqs-per-slice",
        dest="seqs_per_slice",
        type=int,
        default=None,
        help=f"Sequences per slice (htslib default {DEFAULT_SEQS_PER_SLICE})",
    )
    cram.add_argument(
        "-S",
        "--slices-per-container",
        dest="slices_per_container",
        type=int,
        default=None,
        help=f"Slices per container (htslib default {DEFAULT_SLICES_PER_CONTAINER})",
    )
    cram.add_argument(
        "-V",
        "--format-version",
        dest="version",
        default=None,
        help="CRAM format version to write (eg 2.1, 3.0)",
    )
    cram.add_argument(
        "-X",
        "--embed-ref",
        dest="embed_reference",
        action="store_true",
        help="Embed the reference sequence in the CRAM output",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv). Also raises htslib verbosity.",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Build a RunConfig; raises pydantic.ValidationError on bad values."""
    return RunConfig(
        input_format=args.input_format,
        output_format=args.output_format,
        compression_level=args.compression_level,
        reference=args.reference,
        region=args.region,
        seqs_per_slice=args.seqs_per_slice,
        slices_per_container=args.slices_per_container,
        version=args.version,
        embed_reference=bool(args.embed_reference),
        verbosity=args.verbose,
    )
