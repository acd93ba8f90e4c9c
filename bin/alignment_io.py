"""
SAM/BAM/CRAM stream access shared by scramble and scram_merge.

Everything that touches pysam lives here: resolving a codec from a format
name or filename, turning pysam headers and segments into the small value
types the merge logic sorts on, and an AlignmentStream wrapper that gives
readers and writers one read/write/option/close contract.

Writers open their pysam handle lazily in `write_header()`, once the header,
reference set and codec options are known, because pysam needs all of them at
construction time.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath
from typing import TYPE_CHECKING, Any, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

# ------------------------------- CONSTANTS -------------------------------- #

UNMAPPED_REFERENCE_ID = -1
MAX_INT32 = (1 << 31) - 1

# "-" reads stdin / writes stdout, as in samtools and htslib
STDIO_PATH = "-"

VERSION_PATTERN = re.compile(r"^\d+\.\d+$")
RANGE_PATTERN = re.compile(r"^(\d+)(?:-(\d+))?$")


# -------------------------------- ERRORS ----------------------------------- #


class ScramError(Exception):
    """Base class for failures surfaced by the conversion and merge tools."""


class FormatError(ScramError, ValueError):
    """An explicit format name is not one of sam, bam or cram."""


class OpenError(ScramError, OSError):
    """An input, output or reference file could not be opened."""


class HeaderMismatchError(ScramError, ValueError):
    """Input reference sequence lists are not identical."""


class OptionError(ScramError, ValueError):
    """A codec option or range was rejected."""


class AlignmentIOError(ScramError, OSError):
    """Reading, writing or closing a stream failed mid-way."""


# ------------------------------ FORMAT TOKENS ------------------------------ #


class CodecToken(Enum):
    """Alignment codec, valued by the pysam/htslib mode suffix."""

    SAM = ""
    BAM = "b"
    CRAM = "c"

    @property
    def read_mode(self) -> str:
        return f"r{self.value}"

    @property
    def write_mode(self) -> str:
        return f"w{self.value}"


_FORMAT_NAMES = {
    "sam": CodecToken.SAM,
    "bam": CodecToken.BAM,
    "cram": CodecToken.CRAM,
}

_FORMAT_SUFFIXES = {f".{name}": token for name, token in _FORMAT_NAMES.items()}


def parse_format(name: str) -> CodecToken:
    """Map an explicit format name (any case) to its codec."""
    token = _FORMAT_NAMES.get(name.lower())
    if token is None:
        msg = f"Unrecognised file format '{name}'"
        logger.error(msg)
        raise FormatError(msg)
    return token


def detect_format(filename: str) -> CodecToken:
    """
    Guess the codec from the filename extension. Unknown or missing
    extensions (stdin/stdout included) fall back to SAM.
    """
    suffix = PurePath(filename).suffix.lower()
    token = _FORMAT_SUFFIXES.get(suffix, CodecToken.SAM)
    logger.trace(f"Detected {token.name} for '{filename}' (suffix={suffix!r})")
    return token


def resolve_format(explicit_name: str | None, filename: str) -> CodecToken:
    """An explicit format name wins over the filename extension."""
    if explicit_name is not None:
        return parse_format(explicit_name)
    return detect_format(filename)


# ------------------------------- DATA TYPES -------------------------------- #


class ReferenceSequence(NamedTuple):
    """One @SQ line: reference name and length."""

    name: str
    length: int


@dataclass(frozen=True)
class Header:
    """
    Ordered reference sequence list of a stream, plus the full header
    dictionary (@HD, @RG, @PG, @CO ...) so that an output can adopt a copy.
    Position in `sequences` is the reference id records point at.
    """

    sequences: tuple[ReferenceSequence, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_pysam(cls, header: pysam.AlignmentHeader) -> Header:
        sequences = tuple(
            ReferenceSequence(name, length)
            for name, length in zip(header.references, header.lengths)
        )
        return cls(sequences=sequences, raw=header.to_dict())

    @classmethod
    def from_sequences(cls, pairs: Iterable[tuple[str, int]]) -> Header:
        """Build a minimal header (@HD + @SQ lines) from (name, length) pairs."""
        sequences = tuple(ReferenceSequence(name, length) for name, length in pairs)
        raw = {
            "HD": {"VN": "1.6"},
            "SQ": [{"SN": seq.name, "LN": seq.length} for seq in sequences],
        }
        return cls(sequences=sequences, raw=raw)

    def to_dict(self) -> dict[str, Any]:
        """Deep copy of the header dictionary, safe to hand to pysam."""
        return copy.deepcopy(self.raw)

    def __len__(self) -> int:
        return len(self.sequences)


@dataclass(frozen=True)
class AlignmentRecord:
    """
    A decoded alignment plus the four fields the merge orders on.

    `payload` is the pysam.AlignedSegment that gets written out; it takes no
    part in comparisons.
    """

    reference_id: int
    position: int
    is_reverse: bool = False
    is_second_of_pair: bool = False
    payload: Any = field(default=None, compare=False, repr=False)

    @property
    def is_unmapped_reference(self) -> bool:
        return self.reference_id == UNMAPPED_REFERENCE_ID

    @classmethod
    def from_pysam(cls, segment: pysam.AlignedSegment) -> AlignmentRecord:
        # Anything without the READ1 bit counts as "not first", unpaired reads included
        return cls(
            reference_id=segment.reference_id,
            position=segment.reference_start,
            is_reverse=segment.is_reverse,
            is_second_of_pair=not segment.is_read1,
            payload=segment,
        )


class GenomicRange(NamedTuple):
    """A `name[:start[-end]]` region, 1-based and inclusive."""

    name: str
    start: int | None = None
    end: int | None = None

    @staticmethod
    def parse(text: str) -> GenomicRange:
        name, sep, span = text.partition(":")
        if not name:
            msg = f"Malformed range format: '{text}'"
            logger.error(msg)
            raise OptionError(msg)
        if not sep:
            return GenomicRange(name)

        match = RANGE_PATTERN.match(span)
        if match is None:
            msg = f"Malformed range format: '{text}'"
            logger.error(msg)
            raise OptionError(msg)
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) is not None else start
        if start < 1 or end < start:
            msg = f"Malformed range format: '{text}' (need 1 <= start <= end)"
            logger.error(msg)
            raise OptionError(msg)
        return GenomicRange(name, start, end)

    def fetch_args(self) -> tuple[str, int | None, int | None]:
        """(contig, start, stop) in pysam's 0-based half-open convention."""
        start = self.start - 1 if self.start is not None else None
        return self.name, start, self.end


class ReferenceSet:
    """
    Reference FASTA handle that an input and the output may share.

    Streams track whether they own or merely borrow it; only the owner calls
    `release()`, and releasing twice is a bug.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        try:
            self._fasta = pysam.FastaFile(path)
        except (OSError, ValueError) as err:
            msg = f"Unable to open reference FASTA {path}: {err}"
            logger.error(msg)
            raise OpenError(msg) from err
        self.released = False

    @property
    def contigs(self) -> tuple[str, ...]:
        return tuple(self._fasta.references)

    def release(self) -> None:
        assert not self.released, f"Reference set {self.path} released twice"
        self._fasta.close()
        self.released = True
        logger.debug(f"Released reference set {self.path}")


# ------------------------------ CODEC OPTIONS ------------------------------ #


class OptionKey(Enum):
    """Codec knobs, each tagged with the one payload type it accepts."""

    VERBOSITY = ("verbosity", int)
    SEQS_PER_SLICE = ("seqs_per_slice", int)
    SLICES_PER_CONTAINER = ("slices_per_container", int)
    EMBED_REF = ("embed_ref", bool)
    REFERENCE = ("reference", str)
    VERSION = ("version", str)

    def __init__(self, htslib_name: str, payload_type: type) -> None:
        self.htslib_name = htslib_name
        self.payload_type = payload_type

    @property
    def cram_only(self) -> bool:
        return self in _CRAM_FORMAT_OPTIONS

    def validate(self, value: object) -> None:
        """Raise OptionError unless `value` is a valid payload for this key."""
        # bool is an int subclass; reject it for integer knobs
        wrong_type = not isinstance(value, self.payload_type) or (
            self.payload_type is int and isinstance(value, bool)
        )
        if wrong_type:
            msg = (
                f"Option {self.name} expects {self.payload_type.__name__}, "
                f"got {type(value).__name__} ({value!r})"
            )
            logger.error(msg)
            raise OptionError(msg)

        match self:
            case OptionKey.SEQS_PER_SLICE | OptionKey.SLICES_PER_CONTAINER if value <= 0:
                msg = f"Option {self.name} must be positive, got {value}"
            case OptionKey.VERBOSITY if value < 0:
                msg = f"Option {self.name} must be non-negative, got {value}"
            case OptionKey.VERSION if not VERSION_PATTERN.match(value):
                msg = f"Malformed format version '{value}': expected MAJOR.MINOR"
            case OptionKey.REFERENCE if not value:
                msg = "Option REFERENCE requires a non-empty path"
            case _:
                return
        logger.error(msg)
        raise OptionError(msg)


# Options passed to htslib as "key=value" format options on CRAM output
_CRAM_FORMAT_OPTIONS = (
    OptionKey.SEQS_PER_SLICE,
    OptionKey.SLICES_PER_CONTAINER,
    OptionKey.EMBED_REF,
    OptionKey.VERSION,
)


class StreamOption(NamedTuple):
    """One tagged (key, value) codec option."""

    key: OptionKey
    value: int | bool | str


# ----------------------------- ALIGNMENT STREAM ---------------------------- #


class AlignmentStream:
    """
    One SAM/BAM/CRAM input or output over pysam.AlignmentFile.

    Use `open_reader` / `open_writer` rather than the constructor.
    """

    def __init__(
        self,
        path: str,
        codec: CodecToken,
        *,
        is_write: bool,
        handle: pysam.AlignmentFile | None = None,
        header: Header | None = None,
        reference_set: ReferenceSet | None = None,
        owns_reference_set: bool = False,
        compression_level: int | None = None,
    ) -> None:
        self.path = path
        self.codec = codec
        self.is_write = is_write
        self.compression_level = compression_level
        self._handle = handle
        self._header = header
        self._reference_set = reference_set
        self._owns_reference_set = owns_reference_set
        self._options: dict[OptionKey, int | bool | str] = {}
        self._records: Iterator[pysam.AlignedSegment] | None = None
        self._closed = False

    def __repr__(self) -> str:
        direction = "write" if self.is_write else "read"
        return f"AlignmentStream({self.path!r}, {self.codec.name}, {direction})"

    def __enter__(self) -> AlignmentStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- construction --

    @classmethod
    def open_reader(
        cls,
        path: str,
        codec: CodecToken,
        reference: str | None = None,
        region: GenomicRange | None = None,
    ) -> AlignmentStream:
        """
        Open `path` for reading. For CRAM, `reference` is the FASTA used to
        decode it and becomes a reference set owned by this stream. With a
        `region`, only records overlapping it are returned (needs an index).
        """
        assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
            f"Path must be non-empty string, got: {path!r}"
        )

        kwargs = {}
        reference_set = None
        if codec is CodecToken.CRAM:
            if reference is None:
                logger.warning(
                    f"Opening CRAM without explicit reference: {path}. "
                    "Decoding may fail unless the reference is resolvable.",
                )
            else:
                reference_set = ReferenceSet(reference)
                kwargs["reference_filename"] = reference

        mode = codec.read_mode
        logger.debug(f"Opening for read: {path} (mode={mode})")
        try:
            handle = pysam.AlignmentFile(path, mode, **kwargs)
        except (OSError, ValueError) as err:
            if reference_set is not None:
                reference_set.release()
            msg = f"Failed to open alignment file {path}: {err}"
            logger.error(msg)
            raise OpenError(msg) from err

        stream = cls(
            path,
            codec,
            is_write=False,
            handle=handle,
            header=Header.from_pysam(handle.header),
            reference_set=reference_set,
            owns_reference_set=reference_set is not None,
        )
        try:
            if region is None:
                stream._records = iter(handle)
            else:
                contig, start, stop = region.fetch_args()
                stream._records = iter(handle.fetch(contig, start, stop))
        except (OSError, ValueError, KeyError) as err:
            stream.close()
            msg = f"Unable to fetch region {region} from {path}: {err}"
            logger.error(msg)
            raise OpenError(msg) from err

        logger.info(
            f"Opened {codec.name} input {path} with {len(stream.header)} reference sequence(s)",
        )
        return stream

    @classmethod
    def open_writer(
        cls,
        path: str,
        codec: CodecToken,
        compression_level: int | None = None,
    ) -> AlignmentStream:
        """
        Prepare `path` for writing. Nothing is created on disk until
        `write_header()`.
        """
        assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
            f"Path must be non-empty string, got: {path!r}"
        )
        assert compression_level is None or 0 <= compression_level <= 9, (  # noqa: PLR2004
            f"Compression level must be 0-9, got {compression_level}"
        )

        if path != STDIO_PATH and not Path(path).parent.is_dir():
            msg = f"Failed to open output {path}: directory {Path(path).parent} does not exist"
            logger.error(msg)
            raise OpenError(msg)

        return cls(path, codec, is_write=True, compression_level=compression_level)

    # -- metadata --

    @property
    def header(self) -> Header | None:
        return self._header

    def set_header(self, header: Header) -> None:
        if not self.is_write:
            msg = f"Cannot replace the header of input {self.path}"
            logger.error(msg)
            raise OptionError(msg)
        if self._handle is not None:
            msg = f"Header of {self.path} has already been written"
            logger.error(msg)
            raise OptionError(msg)
        self._header = header

    @property
    def reference_set(self) -> ReferenceSet | None:
        return self._reference_set

    @property
    def owns_reference_set(self) -> bool:
        return self._owns_reference_set

    def set_reference_set(self, reference_set: ReferenceSet | None) -> None:
        """
        Borrow `reference_set` (or drop the current one with None). Handing a
        stream the set it already owns leaves it the owner.
        """
        current = self._reference_set
        if self._owns_reference_set and current is not None and current is not reference_set:
            current.release()
        self._owns_reference_set = self._owns_reference_set and current is reference_set
        self._reference_set = reference_set

    def set_option(self, key: OptionKey, value: int | bool | str) -> None:
        key.validate(value)

        if key is OptionKey.VERBOSITY:
            # htslib verbosity is process-wide
            pysam.set_verbosity(value)
            self._options[key] = value
            return

        if not self.is_write:
            msg = f"Option {key.name} only applies to output streams, not {self.path}"
            logger.error(msg)
            raise OptionError(msg)
        if self._handle is not None:
            msg = f"Option {key.name} must be set before the header of {self.path} is written"
            logger.error(msg)
            raise OptionError(msg)
        if key.cram_only and self.codec is not CodecToken.CRAM:
            logger.debug(f"Ignoring CRAM option {key.name} for {self.codec.name} output {self.path}")
        self._options[key] = value

    def format_options(self) -> list[str]:
        """htslib "key=value" options for the pysam writer."""
        options = []
        if self.compression_level is not None:
            if self.codec is CodecToken.SAM:
                logger.debug(f"Compression level ignored for SAM output {self.path}")
            else:
                options.append(f"level={self.compression_level}")
        if self.codec is CodecToken.CRAM:
            for key in _CRAM_FORMAT_OPTIONS:
                if key not in self._options:
                    continue
                value = self._options[key]
                if isinstance(value, bool):
                    value = int(value)
                options.append(f"{key.htslib_name}={value}")
        return options

    def _writer_reference(self) -> str | None:
        explicit = self._options.get(OptionKey.REFERENCE)
        if explicit is not None:
            return str(explicit)
        if self._reference_set is not None:
            return self._reference_set.path
        return None

    def write_header(self) -> None:
        """Open the pysam writer, which emits the header straight away."""
        assert self.is_write, f"write_header() called on input stream {self.path}"
        assert self._handle is None, f"Header of {self.path} already written"
        if self._header is None:
            msg = f"Writing to '{self.path}' requires a header but none was set"
            logger.error(msg)
            raise OptionError(msg)

        kwargs: dict[str, Any] = {"header": self._header.to_dict()}
        format_options = self.format_options()
        if format_options:
            kwargs["format_options"] = format_options
        if self.codec is CodecToken.CRAM:
            reference = self._writer_reference()
            if reference is None:
                logger.warning(
                    f"Writing CRAM without explicit reference: {self.path}. "
                    "Encoding may fail unless the reference is resolvable.",
                )
            else:
                kwargs["reference_filename"] = reference

        mode = self.codec.write_mode
        logger.debug(f"Opening for write: {self.path} (mode={mode}, options={format_options})")
        try:
            self._handle = pysam.AlignmentFile(self.path, mode, **kwargs)
        except ValueError as err:
            msg = f"Codec rejected configuration for {self.path}: {err}"
            logger.error(msg)
            raise OptionError(msg) from err
        except OSError as err:
            msg = f"Failed to open output {self.path}: {err}"
            logger.error(msg)
            raise OpenError(msg) from err
        logger.info(f"Opened {self.codec.name} output {self.path}")

    # -- records --

    def read_record(self) -> AlignmentRecord | None:
        """Next record, or None once the stream is exhausted."""
        assert not self.is_write, f"read_record() called on output stream {self.path}"
        assert self._records is not None, f"read_record() called on closed stream {self.path}"
        try:
            segment = next(self._records)
        except StopIteration:
            return None
        except OSError as err:
            msg = f"Failed reading from {self.path}: {err}"
            logger.error(msg)
            raise AlignmentIOError(msg) from err
        return AlignmentRecord.from_pysam(segment)

    def write_record(self, record: AlignmentRecord) -> None:
        assert self.is_write, f"write_record() called on input stream {self.path}"
        assert self._handle is not None, f"write_header() must precede write_record() on {self.path}"
        assert isinstance(record.payload, pysam.AlignedSegment), (
            f"Record payload must be a pysam.AlignedSegment, got {type(record.payload).__name__}"
        )
        try:
            self._handle.write(record.payload)
        except OSError as err:
            msg = f"Failed writing to {self.path}: {err}"
            logger.error(msg)
            raise AlignmentIOError(msg) from err

    def close(self) -> None:
        """Close the pysam handle and release an owned reference set. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._records = None
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                handle.close()
        except OSError as err:
            msg = f"Failed closing {self.path}: {err}"
            logger.error(msg)
            raise AlignmentIOError(msg) from err
        finally:
            if self._owns_reference_set and self._reference_set is not None:
                self._reference_set.release()
            self._reference_set = None
            self._owns_reference_set = False
        logger.debug(f"Closed {self!r}")
