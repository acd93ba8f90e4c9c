#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Merge coordinate-sorted SAM/BAM/CRAM files into a single sorted stream.

All inputs must carry identical @SQ lines (same names, lengths and order).
Records are ordered by reference, position, strand and then first-of-pair
before anything else; ties between inputs go to the earlier input.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from alignment_io import STDIO_PATH, ScramError
from alignment_merge import merge_files
from cli_common import (
    ScramArgumentParser,
    add_codec_arguments,
    config_from_args,
    configure_logging,
)

if TYPE_CHECKING:
    import argparse
    from collections.abc import Sequence


def build_parser() -> argparse.ArgumentParser:
    p = ScramArgumentParser(
        prog="scram_merge",
        description=(
            "Merge sorted SAM/BAM/CRAM files.\n"
            "Input formats default to the file extensions; output defaults to SAM on stdout."
        ),
    )
    p.add_argument(
        "inputs",
        nargs="+",
        metavar="input_file",
        help="Sorted input files ('-' for stdin)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        default=STDIO_PATH,
        help="Output path (default: stdout)",
    )
    add_codec_arguments(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info(f"Merging {len(args.inputs)} input(s) into {args.out_path}")

    try:
        config = config_from_args(args)
        summary = merge_files(args.inputs, args.out_path, config)
    except ValidationError as err:
        logger.error(f"Invalid options: {err}")
        sys.exit(1)
    except ScramError as err:
        logger.error(f"Merge failed: {err}")
        sys.exit(1)

    logger.success(
        f"Merged {summary.total} record(s) from {len(args.inputs)} input(s) "
        f"into {args.out_path}",
    )


if __name__ == "__main__":
    main()
