"""
Coordinate-ordered merge and straight conversion of alignment streams.

Inputs are individually sorted. The merge keeps one buffered record per input
("lane"), repeatedly writes the lane whose record has the smallest sort key,
and refills that lane from its stream. A single input skips all of this and
is copied record for record.
"""

from __future__ import annotations

from dataclasses import dataclass as std_dataclass
from dataclasses import field
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass

from alignment_io import (
    MAX_INT32,
    AlignmentStream,
    GenomicRange,
    HeaderMismatchError,
    OptionKey,
    ScramError,
    StreamOption,
    resolve_format,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from alignment_io import AlignmentRecord, CodecToken, Header, ReferenceSet

# ------------------------------- CONSTANTS -------------------------------- #

# Sort key layout: | reference (31 bits) | position (31 bits) | strand | mate |
KEY_REFERENCE_SHIFT = 33
KEY_POSITION_SHIFT = 2
MAX_KEY_POSITION = (1 << (KEY_REFERENCE_SHIFT - KEY_POSITION_SHIFT)) - 1

# Emit a progress debug line after writing this many records
DEBUG_EVERY: int = 100_000


# ------------------------------ CONFIGURATION ------------------------------ #


@dataclass
class RunConfig:
    """Settings shared by conversion and merge runs."""

    input_format: str | None = None
    output_format: str | None = None
    compression_level: int | None = Field(default=None, ge=0, le=9)
    reference: str | None = None
    region: str | None = None
    seqs_per_slice: int | None = None
    slices_per_container: int | None = None
    version: str | None = None
    embed_reference: bool = False
    verbosity: int = Field(default=0, ge=0)


def codec_options(config: RunConfig) -> list[StreamOption]:
    """
    Options applied to the output before its header is set. The reference
    path is applied separately, after the header.
    """
    options = [StreamOption(OptionKey.VERBOSITY, config.verbosity)]
    if config.seqs_per_slice is not None:
        options.append(StreamOption(OptionKey.SEQS_PER_SLICE, config.seqs_per_slice))
    if config.slices_per_container is not None:
        options.append(
            StreamOption(OptionKey.SLICES_PER_CONTAINER, config.slices_per_container),
        )
    if config.embed_reference:
        options.append(StreamOption(OptionKey.EMBED_REF, True))  # noqa: FBT003
    if config.version is not None:
        options.append(StreamOption(OptionKey.VERSION, config.version))
    return options


# ------------------------------ ORDERING KEYS ------------------------------ #


def sort_key(record: AlignmentRecord) -> int:
    """
    Pack (reference, position, strand, mate order) into one integer.

    Unmapped records use MAX_INT32 as their reference so they follow every
    mapped record. At equal (reference, position, strand), first-of-pair
    precedes everything else.
    """
    # Positive invariant: position must fit between the reference and flag bits
    assert record.position <= MAX_KEY_POSITION, (
        f"Position {record.position} exceeds sort key capacity ({MAX_KEY_POSITION})"
    )

    if record.reference_id < 0:
        reference = MAX_INT32
    else:
        reference = record.reference_id
    # Unmapped records carry position -1
    position = max(record.position, 0)

    return (
        (reference << KEY_REFERENCE_SHIFT)
        | (position << KEY_POSITION_SHIFT)
        | (int(record.is_reverse) << 1)
        | int(record.is_second_of_pair)
    )


# ---------------------------- HEADER CHECKING ------------------------------ #


def headers_compatible(a: Header, b: Header) -> bool:
    """True when both headers list the same references, in the same order."""
    if len(a.sequences) != len(b.sequences):
        return False
    return all(
        left.name == right.name and left.length == right.length
        for left, right in zip(a.sequences, b.sequences)
    )


def _describe_difference(a: Header, b: Header) -> str:
    if len(a.sequences) != len(b.sequences):
        return f"{len(a.sequences)} vs {len(b.sequences)} reference sequences"
    for index, (left, right) in enumerate(zip(a.sequences, b.sequences)):
        if left != right:
            return f"@SQ #{index}: {left.name}:{left.length} vs {right.name}:{right.length}"
    return "no difference"


def check_headers(headers: Sequence[Header], names: Sequence[str] | None = None) -> None:
    """Raise HeaderMismatchError unless every header matches the first."""
    if names is None:
        names = [f"input {index}" for index in range(len(headers))]
    for index in range(1, len(headers)):
        if headers_compatible(headers[0], headers[index]):
            continue
        msg = (
            f"Incompatible reference sequence list in {names[index]} "
            f"({_describe_difference(headers[0], headers[index])}). "
            f"Currently the @SQ lines need to be identical in all files."
        )
        logger.error(msg)
        raise HeaderMismatchError(msg)


# ------------------------------- MERGE LOGIC ------------------------------- #


@std_dataclass
class Lane:
    """One input taking part in a merge, with its one-record lookahead."""

    index: int
    stream: AlignmentStream
    head: AlignmentRecord | None = None
    emitted: int = 0
    exhausted: bool = False
    # Called with the lane at end of input, before its stream is closed
    on_exhausted: Callable[[Lane], None] | None = field(default=None, repr=False)

    def advance(self) -> None:
        """Buffer the next record; close the stream at end of input."""
        assert not self.exhausted, f"Lane {self.index} advanced after exhaustion"
        self.head = self.stream.read_record()
        if self.head is None:
            self.exhausted = True
            logger.debug(f"Lane {self.index} exhausted after {self.emitted} record(s)")
            if self.on_exhausted is not None:
                self.on_exhausted(self)
            self.stream.close()


@std_dataclass(frozen=True)
class MergeSummary:
    """Records written per input, in input order."""

    lane_counts: tuple[int, ...]

    @property
    def total(self) -> int:
        return sum(self.lane_counts)


class MergeCoordinator:
    """
    k-way merge of sorted inputs into one output.

    The output must already have its header written. `reference_set` is the
    handle the output borrowed from an input. The output lets go of it before
    the owning input is closed, which can happen mid-merge when that input
    runs dry, and in any case before the output itself is closed.
    """

    def __init__(
        self,
        inputs: Sequence[AlignmentStream],
        output: AlignmentStream,
        reference_set: ReferenceSet | None = None,
    ) -> None:
        assert len(inputs) > 0, "Merging requires at least one input"
        self.output = output
        self.reference_set = reference_set
        self.lanes = [
            Lane(index, stream, on_exhausted=self._drop_shared_reference)
            for index, stream in enumerate(inputs)
        ]

    def _drop_shared_reference(self, lane: Lane) -> None:
        """Unhook the output from the reference set `lane` is about to release."""
        shared = self.reference_set
        if shared is None or lane.stream.reference_set is not shared:
            return
        if self.output.reference_set is shared:
            logger.debug(f"Output drops the reference set owned by lane {lane.index}")
            self.output.set_reference_set(None)

    def _select_lane(self) -> Lane | None:
        """Active lane with the smallest key; the lowest index wins ties."""
        best: Lane | None = None
        best_key = 0
        for lane in self.lanes:
            if lane.exhausted:
                continue
            key = sort_key(lane.head)
            if best is None or key < best_key:
                best, best_key = lane, key
        return best

    def run(self) -> MergeSummary:
        for lane in self.lanes:
            lane.advance()

        written = 0
        while True:
            lane = self._select_lane()
            if lane is None:
                break
            self.output.write_record(lane.head)
            lane.emitted += 1
            written += 1
            if written % DEBUG_EVERY == 0:
                active = sum(1 for each in self.lanes if not each.exhausted)
                logger.debug(f"Progress: written={written}, active_lanes={active}")
            lane.advance()

        finish_output(self.output, self.reference_set)
        summary = MergeSummary(tuple(lane.emitted for lane in self.lanes))
        logger.info(f"Merge totals: written={summary.total}, per_input={list(summary.lane_counts)}")
        return summary


def convert_stream(inp: AlignmentStream, out: AlignmentStream) -> int:
    """Copy every record from `inp` to `out` in input order."""
    copied = 0
    while True:
        record = inp.read_record()
        if record is None:
            break
        out.write_record(record)
        copied += 1
        if copied % DEBUG_EVERY == 0:
            logger.debug(f"Progress: copied={copied}")
    logger.info(f"Conversion totals: copied={copied}")
    return copied


def finish_output(output: AlignmentStream, reference_set: ReferenceSet | None) -> None:
    """Drop the output's hold on a shared reference set, then close it."""
    if reference_set is not None and output.reference_set is reference_set:
        output.set_reference_set(None)
    output.close()


def merge_streams(
    inputs: Sequence[AlignmentStream],
    output: AlignmentStream,
    reference_set: ReferenceSet | None = None,
) -> MergeSummary:
    """Merge several inputs, or convert when there is only one."""
    assert len(inputs) > 0, "Merging requires at least one input"
    if len(inputs) > 1:
        return MergeCoordinator(inputs, output, reference_set).run()

    copied = convert_stream(inputs[0], output)
    finish_output(output, reference_set)
    inputs[0].close()
    return MergeSummary((copied,))


# ------------------------------ ORCHESTRATION ------------------------------ #


def open_inputs(paths: Sequence[str], config: RunConfig) -> list[AlignmentStream]:
    """
    Open every input, checking each header against the first as it opens.
    Inputs already opened are closed again if a later one fails.
    """
    assert len(paths) > 0, "No input files specified"
    region = GenomicRange.parse(config.region) if config.region is not None else None

    streams: list[AlignmentStream] = []
    try:
        for path in paths:
            codec = resolve_format(config.input_format, path)
            stream = AlignmentStream.open_reader(
                path,
                codec,
                reference=config.reference,
                region=region,
            )
            streams.append(stream)
            if len(streams) > 1:
                check_headers(
                    [streams[0].header, stream.header],
                    names=[streams[0].path, stream.path],
                )
    except ScramError:
        for stream in streams:
            stream.close()
        raise
    return streams


def prepare_output(
    path: str,
    codec: CodecToken,
    template: AlignmentStream,
    config: RunConfig,
) -> AlignmentStream:
    """
    Open the output with a copy of `template`'s header and a borrowed handle
    on its reference set, apply codec options, and write the header.
    """
    output = AlignmentStream.open_writer(path, codec, compression_level=config.compression_level)
    output.set_reference_set(template.reference_set)
    for option in codec_options(config):
        output.set_option(option.key, option.value)
    output.set_header(template.header)
    # The reference has to come after the header for CRAM
    if config.reference is not None:
        output.set_option(OptionKey.REFERENCE, config.reference)
    output.write_header()
    return output


def merge_files(
    input_paths: Sequence[str],
    output_path: str,
    config: RunConfig,
) -> MergeSummary:
    """Merge (or, for a single path, convert) alignment files into `output_path`."""
    output_codec = resolve_format(config.output_format, output_path)
    inputs = open_inputs(input_paths, config)
    logger.debug(f"RunConfig: {config}")

    try:
        output = prepare_output(output_path, output_codec, inputs[0], config)
    except ScramError:
        for stream in inputs:
            stream.close()
        raise

    try:
        return merge_streams(inputs, output, reference_set=inputs[0].reference_set)
    finally:
        # No-ops after a clean run; after a failure the output is left partial
        output.close()
        for stream in inputs:
            stream.close()


def convert_file(input_path: str, output_path: str, config: RunConfig) -> int:
    """Convert one alignment file to another format, keeping record order."""
    return merge_files([input_path], output_path, config).total
