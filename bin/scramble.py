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
Convert a single SAM/BAM/CRAM file to another alignment format.

Records are copied in input order; nothing is re-sorted. With no
positional arguments input comes from stdin and output goes to stdout.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from alignment_io import STDIO_PATH, ScramError
from alignment_merge import convert_file
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
        prog="scramble",
        description=(
            "Convert between SAM, BAM and CRAM.\n"
            "Formats default to the file extensions; '-' or no path means stdin/stdout."
        ),
    )
    p.add_argument(
        "paths",
        nargs="*",
        metavar="input_file [output_file]",
        help="Input and output paths (default: stdin and stdout)",
    )
    add_codec_arguments(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if len(args.paths) > 2:  # noqa: PLR2004
        parser.error("expected at most an input file and an output file")
    configure_logging(args.verbose, args.quiet)

    in_path = args.paths[0] if len(args.paths) > 0 else STDIO_PATH
    out_path = args.paths[1] if len(args.paths) > 1 else STDIO_PATH
    logger.info(f"Converting {in_path} -> {out_path}")

    try:
        config = config_from_args(args)
        copied = convert_file(in_path, out_path, config)
    except ValidationError as err:
        logger.error(f"Invalid options: {err}")
        sys.exit(1)
    except ScramError as err:
        logger.error(f"Conversion failed: {err}")
        sys.exit(1)

    logger.success(f"Converted {copied} record(s) from {in_path} to {out_path}")


if __name__ == "__main__":
    main()
