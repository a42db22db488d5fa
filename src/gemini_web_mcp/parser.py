"""Decoder for StreamGenerate responses.

Response format:
    )]}'
    <byte_count>
    [["wrb.fr", null, "<json body>", ...], ["di", 97], ["af.httprm", ...]]
    ...

Line index 2 holds the envelope. The real payload is one of its entries,
JSON-encoded at position 2; the others are framing/telemetry entries of the
same outer shape, so the body is recognised by content (a truthy
candidate list at body[4]) rather than by position.

Body layout (positions actually read):
    [1]  metadata ([cid, rid, ...]) used as the continuation pointer
    [4]  candidate list

Candidate layout:
    [0]  rcid
    [1]  [text]
    [11] web sources: [[title, url, snippet], ...]
    [12] images: [1] web images, [7][0] generated images
    [14] code blocks: [[language, code], ...]
    [16] code execution: [output, error]
    [22] [card text] (replaces a card_content placeholder in [1][0])
    [30] files: [[file_name, file_id, title, null, content], ...]
    [37] [[thoughts]]
    [45] factuality: [rating, confidence]
"""

import json
import logging
from typing import Any

from .constants import (
    CARD_CONTENT_PATTERN,
    DEFAULT_ATTACHMENT_NAME,
    ERROR_CODES,
    FENCED_CODE_PATTERN,
    IMMERSIVE_CHIP_PATTERN,
    detect_mime_type,
)
from .exceptions import ParseError
from .models import (
    Candidate,
    CodeBlock,
    CodeExecutionResult,
    Factuality,
    FileAttachment,
    GeneratedImage,
    GenerationResult,
    Source,
    WebImage,
)

logger = logging.getLogger("gemini_web_mcp.api")

# Named positional fields of a candidate. Any missing link yields the default.
_FIELDS: dict[str, tuple[int, ...]] = {
    "rcid": (0,),
    "text": (1, 0),
    "sources": (11,),
    "web_images": (12, 1),
    "generated_images": (12, 7, 0),
    "code_blocks": (14,),
    "code_execution": (16,),
    "card_text": (22, 0),
    "files": (30,),
    "thoughts": (37, 0, 0),
    "factuality": (45,),
}

# Where the backend puts its error code when it returns no body
_ERROR_CODE_PATH = (0, 5, 2, 0, 1, 0)


def get_nested(data: Any, path: tuple[int, ...], default: Any = None) -> Any:
    """Follow ``path`` through nested lists; return ``default`` on any miss or null."""
    current = data
    for index in path:
        if not isinstance(current, list) or not -len(current) <= index < len(current):
            return default
        current = current[index]
    return default if current is None else current


def _field(candidate: list, name: str, default: Any = None) -> Any:
    return get_nested(candidate, _FIELDS[name], default)


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _split_lines(response_text: str) -> list[str]:
    lines = response_text.split("\n")
    if len(lines) < 3:
        raise ParseError(f"Invalid response format: expected at least 3 lines, got {len(lines)}")
    return lines


def _load_envelope(line: str) -> list:
    try:
        envelope = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid response envelope: {e}") from e
    if not isinstance(envelope, list):
        raise ParseError("Invalid response envelope: expected a JSON array")
    return envelope


def _find_body(envelope: list) -> list | None:
    """Return the first decoded entry whose index 4 is truthy."""
    for part in envelope:
        payload = part[2] if isinstance(part, list) and len(part) > 2 else None
        if not isinstance(payload, str):
            continue
        try:
            main_part = json.loads(payload)
        except json.JSONDecodeError:
            continue
        if get_nested(main_part, (4,)):
            return main_part
    return None


def _no_body_error(envelope: list) -> ParseError:
    code = get_nested(envelope, _ERROR_CODE_PATH)
    if isinstance(code, int) and code in ERROR_CODES:
        return ParseError(
            f"No valid response body found (backend error {code}: {ERROR_CODES[code]})",
            code=code,
        )
    return ParseError("No valid response body found")


def _resolve_text(candidate: list, index: int) -> str:
    text = _field(candidate, "text")
    if not isinstance(text, str):
        raise ParseError(f"Candidate {index} has no text")
    # Card-style answers carry a placeholder URL instead of inline text
    if CARD_CONTENT_PATTERN.match(text):
        text = _field(candidate, "card_text") or text
    return text


def _parse_file_attachments(candidate: list, text: str) -> list[FileAttachment]:
    chip = IMMERSIVE_CHIP_PATTERN.search(text)
    chip_url = chip.group(0) if chip else None

    attachments = []
    for file in _as_list(_field(candidate, "files")):
        if not isinstance(file, list) or len(file) < 5:
            continue
        attachments.append(FileAttachment(
            file_name=file[0] or DEFAULT_ATTACHMENT_NAME,
            mime_type=detect_mime_type(file[0]),
            url=chip_url,
            title=file[2] or None,
            content=file[4] or None,
        ))
    return attachments


def _parse_code_blocks(candidate: list, text: str) -> list[CodeBlock]:
    blocks = []
    for code in _as_list(_field(candidate, "code_blocks")):
        if get_nested(code, (1,)):
            blocks.append(CodeBlock(language=code[0] or "text", code=code[1]))
    if blocks:
        return blocks

    # Fall back to fenced blocks in the markdown text
    return [
        CodeBlock(language=match.group(1) or "text", code=match.group(2).strip())
        for match in FENCED_CODE_PATTERN.finditer(text)
    ]


def _parse_code_execution(candidate: list) -> CodeExecutionResult | None:
    execution = _field(candidate, "code_execution")
    output = get_nested(execution, (0,))
    if not output:
        return None
    return CodeExecutionResult(output=output, error=get_nested(execution, (1,)) or None)


def _parse_factuality(candidate: list) -> Factuality | None:
    factuality = _field(candidate, "factuality")
    if factuality is None:
        return None
    return Factuality(
        rating=get_nested(factuality, (0,)) or None,
        confidence=get_nested(factuality, (1,)) or None,
    )


def _parse_sources(candidate: list) -> list[Source]:
    sources = []
    for source in _as_list(_field(candidate, "sources")):
        entry = get_nested(source, (0,))
        if not entry:
            continue
        sources.append(Source(
            title=get_nested(entry, (0,), ""),
            url=get_nested(entry, (1,), ""),
            snippet=get_nested(entry, (2,), ""),
        ))
    return sources


def _parse_web_images(candidate: list) -> list[WebImage]:
    """Web images are read strictly; one malformed entry empties the whole list."""
    entries = _as_list(_field(candidate, "web_images"))
    try:
        return [
            WebImage(url=entry[0][0][0], title=entry[7][0] or "", alt=entry[0][4] or "")
            for entry in entries
        ]
    except (IndexError, TypeError, KeyError) as e:
        logger.debug(f"Dropping malformed web image list: {e!r}")
        return []


def _parse_generated_images(candidate: list) -> list[GeneratedImage]:
    images = []
    for entry in _as_list(_field(candidate, "generated_images")):
        try:
            url = entry[0][3][3]
        except (IndexError, TypeError, KeyError):
            logger.debug("Skipping malformed generated image")
            continue
        number = get_nested(entry, (3, 6))
        images.append(GeneratedImage(
            url=url,
            title=f"Generated Image {number}" if number else "Generated Image",
            alt=get_nested(entry, (3, 5, 0), ""),
        ))
    return images


def parse_candidate(candidate: Any, index: int = 0) -> Candidate:
    """Decode one raw candidate array."""
    if not isinstance(candidate, list):
        raise ParseError(f"Candidate {index} is not an array")

    text = _resolve_text(candidate, index)
    return Candidate(
        rcid=get_nested(candidate, (0,)),
        text=text,
        thoughts=_field(candidate, "thoughts"),
        web_images=_parse_web_images(candidate),
        generated_images=_parse_generated_images(candidate),
        file_attachments=_parse_file_attachments(candidate, text),
        code_blocks=_parse_code_blocks(candidate, text),
        code_execution_result=_parse_code_execution(candidate),
        factuality=_parse_factuality(candidate),
        sources=_parse_sources(candidate),
    )


def decode_response(response_text: str) -> GenerationResult:
    """Parse a raw StreamGenerate response into a GenerationResult.

    Raises:
        ParseError: If the envelope, body or candidate list is missing or malformed.
    """
    lines = _split_lines(response_text)
    envelope = _load_envelope(lines[2])

    body = _find_body(envelope)
    if body is None:
        raise _no_body_error(envelope)

    raw_candidates = body[4]
    if not isinstance(raw_candidates, list) or not raw_candidates:
        raise ParseError("No candidates found in response")

    candidates = [parse_candidate(c, i) for i, c in enumerate(raw_candidates)]
    return GenerationResult(metadata=get_nested(body, (1,)), candidates=candidates)
