"""
NDJSON reader for bulk clinical-record exports.

One resource per line. Lines are read lazily, so exports larger than memory
are split in a single pass. A line that is not valid UTF-8 is passed through
as bytes and rejected on its own; only a stream whose record boundaries
cannot be found at all is structurally invalid.
"""

import json
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterable, Iterator, NamedTuple, TextIO

from fhir_rag_ingestion.core.errors import StructuralError, ValidationError
from fhir_rag_ingestion.utils.validation import validate_resource_id, validate_resource_type

BOM = "\ufeff"


@dataclass(frozen=True)
class ParsedRecord:
    """A well-formed line of an export."""

    position: int
    resource_type: str
    resource_id: str
    payload: bytes


class Line(NamedTuple):
    """
    One line of an export.

    Attributes:
        position: 1-based line number
        content: Text without the line terminator, or raw bytes if not valid UTF-8
        terminated: False for a final line with no trailing newline
    """

    position: int
    content: str | bytes
    terminated: bool


def iter_lines(stream: BinaryIO | TextIO | Iterable[bytes | str]) -> Iterator[Line]:
    """
    Yield every line of `stream`.

    Raises:
        StructuralError: If the stream yields something other than bytes or text
    """
    for number, raw in enumerate(stream, start=1):
        if isinstance(raw, bytes):
            terminated = raw.endswith(b"\n")
            content = raw.rstrip(b"\r\n")
            try:
                text = content.decode("utf-8")
            except UnicodeDecodeError:
                yield Line(number, content, terminated)
                continue
            yield Line(number, text, terminated)
        elif isinstance(raw, str):
            yield Line(number, raw.rstrip("\r\n"), raw.endswith("\n"))
        else:
            raise StructuralError(f"Unsupported stream element {type(raw).__name__}", position=number)


def check_first_line(line: Line) -> None:
    """
    The first non-blank line decides whether record boundaries exist at all.

    A JSON array export and binary data without a single line break are
    not NDJSON. Anything else is split into lines and judged line by line.

    Raises:
        StructuralError: If the stream has no usable record boundaries
    """
    if isinstance(line.content, bytes):
        binary = True
    else:
        if line.content.lstrip(BOM).strip().startswith("["):
            raise StructuralError(
                f"Line {line.position} starts a JSON array; export is not NDJSON",
                position=line.position,
            )
        binary = "\x00" in line.content

    if binary and not line.terminated:
        raise StructuralError(
            "Binary data without line boundaries; export is not NDJSON",
            position=line.position,
        )


def parse_line(position: int, content: str | bytes, max_record_bytes: int | None = None) -> ParsedRecord:
    """
    Parse one non-blank line into a resource.

    Args:
        position: 1-based line number
        content: Line content without the trailing newline
        max_record_bytes: Size limit for a single record

    Returns:
        ParsedRecord

    Raises:
        ValidationError: If the line is not UTF-8, or not a JSON object with resourceType and id
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Line is not valid UTF-8 (byte {e.start})", position=position) from e

    payload = content.strip().lstrip(BOM).encode("utf-8")
    if max_record_bytes is not None and len(payload) > max_record_bytes:
        raise ValidationError(
            f"Record is {len(payload)} bytes, limit is {max_record_bytes}", position=position
        )

    try:
        resource: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e.msg}", position=position) from e

    if not isinstance(resource, dict):
        raise ValidationError(f"Expected a JSON object, got {type(resource).__name__}", position=position)

    resource_type = resource.get("resourceType")
    resource_id = resource.get("id")
    recovered_type = resource_type if isinstance(resource_type, str) and resource_type else None
    recovered_id = resource_id if isinstance(resource_id, str) and resource_id else None

    try:
        validate_resource_type(resource_type)
        validate_resource_id(resource_id)
    except ValidationError as e:
        raise ValidationError(
            e.message, position=position, resource_id=recovered_id, resource_type=recovered_type
        ) from e

    return ParsedRecord(
        position=position,
        resource_type=recovered_type,
        resource_id=recovered_id,
        payload=payload,
    )
