from __future__ import annotations

import codecs
import hashlib
import logging
from array import array
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import EmptyDocumentError, InvalidEncodingError
from .headings import DEFAULT_HEADING_CONFIG, HeadingConfig, HeadingScanner
from .models import ParsedGuide

logger = logging.getLogger(__name__)


class GuideParser:
    """
    Single-pass line indexer for plain-text guides.

    The source is read in fixed-size chunks and never held in memory as a
    whole. Each chunk is checksummed, validated against the configured
    encoding, optionally copied into a content sink, and scanned for line
    terminators. Only the offset table and a short prefix of the lines around
    the cursor (for heading detection) are retained.

    Lines end at `\\n` or `\\r\\n`; a trailing terminator does not open an
    extra empty line. Offsets and lengths are in bytes and exclude the
    terminator, so a line's content is `raw[offset:offset + length]`.
    """

    def __init__(
        self,
        heading_config: HeadingConfig = DEFAULT_HEADING_CONFIG,
        encoding: str = "utf-8",
        chunk_size: int = 64 * 1024,
        capture_limit: int = 512,
    ):
        codec = codecs.lookup(encoding)
        if "\n".encode(codec.name) != b"\n" or "\r".encode(codec.name) != b"\r":
            raise ValueError(f"Encoding {encoding!r} is not ASCII compatible")
        if capture_limit <= heading_config.max_heading_length * 4:
            raise ValueError("capture_limit must leave room for the longest multi-byte heading")
        self.heading_config = heading_config
        self.encoding = codec.name
        self.chunk_size = chunk_size
        self.capture_limit = capture_limit

    def parse_path(self, path: Path, sink: Optional[BinaryIO] = None) -> ParsedGuide:
        with Path(path).open("rb") as source:
            return self.parse(source, sink=sink)

    def parse(self, source: BinaryIO, sink: Optional[BinaryIO] = None) -> ParsedGuide:
        decoder = codecs.getincrementaldecoder(self.encoding)(errors="strict")
        digest = hashlib.sha256()
        scanner = HeadingScanner(self.heading_config)
        offsets = array("q")
        lengths = array("q")
        carry = bytearray()
        position = 0
        line_start = 0
        last_byte = b""

        for chunk in iter(lambda: source.read(self.chunk_size), b""):
            digest.update(chunk)
            if sink is not None:
                sink.write(chunk)
            self._validate(decoder, chunk, position)

            cursor = 0
            while True:
                newline = chunk.find(b"\n", cursor)
                if newline == -1:
                    self._capture(carry, chunk, cursor, len(chunk))
                    break
                self._capture(carry, chunk, cursor, newline)
                line_end = position + newline
                preceding = chunk[newline - 1 : newline] if newline > 0 else last_byte
                if line_end > line_start and preceding == b"\r":
                    line_end -= 1
                    if carry.endswith(b"\r"):
                        del carry[-1:]
                self._emit(offsets, lengths, scanner, carry, line_start, line_end)
                line_start = position + newline + 1
                cursor = newline + 1
            position += len(chunk)
            last_byte = chunk[-1:]

        if position == 0:
            raise EmptyDocumentError("Document is empty")
        self._validate(decoder, b"", position, final=True)
        if line_start < position:
            self._emit(offsets, lengths, scanner, carry, line_start, position)

        sections = scanner.finish()
        logger.debug("Indexed %s lines (%s bytes), %s section candidates", len(offsets), position, len(sections))
        return ParsedGuide(
            line_offsets=offsets,
            line_lengths=lengths,
            sections=sections,
            checksum=digest.hexdigest(),
            byte_size=position,
            encoding=self.encoding,
        )

    def _validate(self, decoder, chunk: bytes, position: int, final: bool = False) -> None:
        pending = decoder.getstate()[0]
        try:
            decoder.decode(chunk, final=final)
        except UnicodeDecodeError as exc:
            offset = position - len(pending) + exc.start
            raise InvalidEncodingError(
                f"Input is not valid {self.encoding} at byte {offset}",
                byte_offset=offset,
                encoding=self.encoding,
            ) from exc

    def _capture(self, carry: bytearray, chunk: bytes, start: int, end: int) -> None:
        room = self.capture_limit - len(carry)
        if room > 0:
            carry += chunk[start : min(end, start + room)]

    def _emit(
        self,
        offsets: array,
        lengths: array,
        scanner: HeadingScanner,
        carry: bytearray,
        line_start: int,
        line_end: int,
    ) -> None:
        line_number = len(offsets)
        offsets.append(line_start)
        lengths.append(line_end - line_start)
        # A truncated capture may split a multi-byte character; the input was
        # already validated, so dropping the tail is safe.
        scanner.feed(line_number, carry.decode(self.encoding, errors="ignore"))
        carry.clear()
