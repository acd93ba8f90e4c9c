"""
Unit tests for codec resolution in alignment_io.py

Covers explicit format names, extension sniffing and the SAM fallback.
"""

import pytest
from alignment_io import (
    CodecToken,
    FormatError,
    detect_format,
    parse_format,
    resolve_format,
)


class TestCodecToken:
    """Test pysam mode strings derived from codec tokens."""

    @pytest.mark.parametrize(
        "token,read_mode,write_mode",
        [
            (CodecToken.SAM, "r", "w"),
            (CodecToken.BAM, "rb", "wb"),
            (CodecToken.CRAM, "rc", "wc"),
        ],
    )
    def test_modes(self, token: CodecToken, read_mode: str, write_mode: str):
        """Each codec maps onto the matching pysam open mode."""
        assert token.read_mode == read_mode
        assert token.write_mode == write_mode


class TestParseFormat:
    """Test explicit -I/-O format names."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("sam", CodecToken.SAM),
            ("SAM", CodecToken.SAM),
            ("bam", CodecToken.BAM),
            ("BAM", CodecToken.BAM),
            ("Bam", CodecToken.BAM),
            ("cram", CodecToken.CRAM),
            ("CRAM", CodecToken.CRAM),
        ],
    )
    def test_known_names(self, name: str, expected: CodecToken):
        """Format names match regardless of case."""
        assert parse_format(name) is expected

    @pytest.mark.parametrize("name", ["vcf", "", "bam ", ".bam", "sambam"])
    def test_unknown_names(self, name: str):
        """Anything else is a FormatError."""
        with pytest.raises(FormatError, match="Unrecognised file format"):
            parse_format(name)

    def test_format_error_is_value_error(self):
        """FormatError can be caught as a plain ValueError."""
        with pytest.raises(ValueError):
            parse_format("fastq")


class TestDetectFormat:
    """Test codec detection from filename extensions."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("reads.sam", CodecToken.SAM),
            ("reads.SAM", CodecToken.SAM),
            ("reads.bam", CodecToken.BAM),
            ("READS.BAM", CodecToken.BAM),
            ("sample.sorted.bam", CodecToken.BAM),
            ("reads.cram", CodecToken.CRAM),
            ("reads.Cram", CodecToken.CRAM),
            ("/data/run.1/reads.cram", CodecToken.CRAM),
        ],
    )
    def test_known_extensions(self, filename: str, expected: CodecToken):
        """The last extension decides the codec, case-insensitively."""
        assert detect_format(filename) is expected

    @pytest.mark.parametrize(
        "filename",
        ["reads.txt", "reads", "-", "reads.bam.gz", "dir.bam/reads", ""],
    )
    def test_unmatched_defaults_to_sam(self, filename: str):
        """Unknown or missing extensions fall back to SAM instead of failing."""
        assert detect_format(filename) is CodecToken.SAM


class TestResolveFormat:
    """Test the precedence between explicit names and extensions."""

    def test_explicit_name_wins(self):
        """An explicit format overrides the filename extension."""
        assert resolve_format("cram", "reads.bam") is CodecToken.CRAM

    def test_falls_back_to_extension(self):
        """Without an explicit name the extension is used."""
        assert resolve_format(None, "reads.bam") is CodecToken.BAM

    def test_stdio_without_name(self):
        """stdin/stdout without an explicit name is SAM."""
        assert resolve_format(None, "-") is CodecToken.SAM

    def test_bad_explicit_name_fails_even_with_good_extension(self):
        """A bad explicit name is an error, not a reason to sniff the extension."""
        with pytest.raises(FormatError):
            resolve_format("bcf", "reads.bam")
