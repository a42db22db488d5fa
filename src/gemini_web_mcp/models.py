"""Typed views over decoded Gemini responses and chat state."""

from dataclasses import asdict, dataclass, field
from typing import Any

from .exceptions import InvalidArgumentError


@dataclass
class Image:
    """An image attached to a candidate."""

    url: str
    title: str = ""
    alt: str = ""

    type = "image"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "url": self.url, "title": self.title, "alt": self.alt}


@dataclass
class WebImage(Image):
    """Image sourced from a web search result."""

    type = "web_image"


@dataclass
class GeneratedImage(Image):
    """Image generated by the model."""

    type = "generated_image"


@dataclass
class CodeBlock:
    language: str
    code: str


@dataclass
class FileAttachment:
    """A generated file.

    ``url`` is the first immersive-entry chip found in the candidate text and
    is shared by every attachment of that candidate; the payload does not say
    which chip belongs to which file.
    """

    file_name: str
    mime_type: str
    url: str | None = None
    title: str | None = None
    content: str | None = None


@dataclass
class CodeExecutionResult:
    output: Any
    error: Any = None


@dataclass
class Factuality:
    rating: Any = None
    confidence: Any = None


@dataclass
class Source:
    title: str = ""
    url: str = ""
    snippet: str = ""


@dataclass
class Candidate:
    """One alternative answer within a single turn."""

    rcid: Any
    text: str
    thoughts: str | None = None
    web_images: list[WebImage] = field(default_factory=list)
    generated_images: list[GeneratedImage] = field(default_factory=list)
    file_attachments: list[FileAttachment] = field(default_factory=list)
    code_blocks: list[CodeBlock] = field(default_factory=list)
    code_execution_result: CodeExecutionResult | None = None
    factuality: Factuality | None = None
    sources: list[Source] = field(default_factory=list)

    @property
    def images(self) -> list[Image]:
        return [*self.web_images, *self.generated_images]

    def to_dict(self) -> dict[str, Any]:
        return {
            "rcid": self.rcid,
            "text": self.text,
            "thoughts": self.thoughts,
            "images": [img.to_dict() for img in self.images],
            "web_images": [img.to_dict() for img in self.web_images],
            "generated_images": [img.to_dict() for img in self.generated_images],
            "file_attachments": [asdict(f) for f in self.file_attachments],
            "code_blocks": [asdict(c) for c in self.code_blocks],
            "code_execution_result": (
                asdict(self.code_execution_result) if self.code_execution_result else None
            ),
            "factuality": asdict(self.factuality) if self.factuality else None,
            "sources": [asdict(s) for s in self.sources],
        }


@dataclass
class GenerationResult:
    """Decoded reply to one generate request.

    The top-level content properties mirror ``candidates[chosen]``; the
    candidates list is the only source of truth.
    """

    metadata: Any
    candidates: list[Candidate]
    chosen: int = 0

    @property
    def candidate(self) -> Candidate:
        return self.candidates[self.chosen]

    @property
    def rcid(self) -> Any:
        return self.candidate.rcid

    @property
    def text(self) -> str:
        return self.candidate.text

    @property
    def thoughts(self) -> str | None:
        return self.candidate.thoughts

    @property
    def images(self) -> list[Image]:
        return self.candidate.images

    @property
    def web_images(self) -> list[WebImage]:
        return self.candidate.web_images

    @property
    def generated_images(self) -> list[GeneratedImage]:
        return self.candidate.generated_images

    @property
    def file_attachments(self) -> list[FileAttachment]:
        return self.candidate.file_attachments

    @property
    def code_blocks(self) -> list[CodeBlock]:
        return self.candidate.code_blocks

    @property
    def code_execution_result(self) -> CodeExecutionResult | None:
        return self.candidate.code_execution_result

    @property
    def factuality(self) -> Factuality | None:
        return self.candidate.factuality

    @property
    def sources(self) -> list[Source]:
        return self.candidate.sources

    def to_dict(self) -> dict[str, Any]:
        """JSON projection of the chosen candidate plus shared fields."""
        data = self.candidate.to_dict()
        data["metadata"] = self.metadata
        data["candidates"] = len(self.candidates)
        data["chosen"] = self.chosen
        return data


class ContinuationPointer:
    """The [cid, rid, rcid] triple that threads a conversation across turns."""

    SLOTS = 3

    def __init__(self, values: list | tuple | None = None):
        self._slots: list[Any] = [None] * self.SLOTS
        if values is not None:
            self.update(values)

    def update(self, values: list | tuple) -> None:
        """Overwrite the leading slots with ``values``; later slots keep their value."""
        if len(values) > self.SLOTS:
            raise InvalidArgumentError(
                f"Metadata cannot exceed {self.SLOTS} elements (got {len(values)})"
            )
        for i, value in enumerate(values):
            self._slots[i] = value

    def as_list(self) -> list[Any]:
        return list(self._slots)

    @property
    def cid(self) -> Any:
        return self._slots[0]

    @cid.setter
    def cid(self, value: Any) -> None:
        self._slots[0] = value

    @property
    def rid(self) -> Any:
        return self._slots[1]

    @rid.setter
    def rid(self, value: Any) -> None:
        self._slots[1] = value

    @property
    def rcid(self) -> Any:
        return self._slots[2]

    @rcid.setter
    def rcid(self, value: Any) -> None:
        self._slots[2] = value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ContinuationPointer):
            return self._slots == other._slots
        if isinstance(other, (list, tuple)):
            return self._slots == list(other)
        return NotImplemented

    def __repr__(self) -> str:
        return f"ContinuationPointer(cid={self.cid!r}, rid={self.rid!r}, rcid={self.rcid!r})"
