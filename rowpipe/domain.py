import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

ContentPart = Dict[str, Any]
Message = Dict[str, Any]


def text_part(text: str) -> ContentPart:
    return {"type": "text", "text": text}


def image_part(url: str) -> ContentPart:
    """Image block; `url` is a remote URL or a `data:image/...;base64,` URL."""
    return {"type": "image_url", "image_url": {"url": url}}


def audio_part(data: str, fmt: str) -> ContentPart:
    return {"type": "input_audio", "input_audio": {"data": data, "format": fmt}}


def parts_text(parts: Iterable[ContentPart], sep: str = "\n\n") -> str:
    """Joins the text blocks of a content list, skipping media."""
    return sep.join(p["text"] for p in parts if p.get("type") == "text")


@dataclass
class ModelConfig:
    """Resolved settings for one model role (step, judge, feedback, plugin)."""
    model: str
    temperature: Optional[float] = None
    reasoning_effort: Optional[str] = None
    system_parts: List[ContentPart] = field(default_factory=list)
    prompt_parts: List[ContentPart] = field(default_factory=list)


@dataclass
class OutputStrategy:
    """How a result is persisted into the row and whether it fans the row out."""
    mode: str = "ignore"
    column: Optional[str] = None
    explode: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None

    def to_dict(self):
        return self.__dict__


@dataclass
class PluginSpec:
    """One plugin entry of a step, before per-row resolution."""
    kind: str
    plugin_id: str
    config: Dict[str, Any] = field(default_factory=dict)
    output: OutputStrategy = field(default_factory=OutputStrategy)


@dataclass
class StepConfig:
    model: ModelConfig
    prompt_parts: List[ContentPart] = field(default_factory=list)
    json_schema: Optional[Any] = None
    plugins: List[PluginSpec] = field(default_factory=list)
    output: OutputStrategy = field(default_factory=OutputStrategy)
    candidates: int = 1
    judge: Optional[ModelConfig] = None
    feedback: Optional[ModelConfig] = None
    feedback_loops: int = 0
    timeout: Optional[float] = None
    aspect_ratio: Optional[str] = None
    verify_command: Optional[str] = None
    command: Optional[str] = None
    skip_candidate_command: bool = False
    output_path: Optional[str] = None
    max_retries: int = 3


@dataclass
class WorkUnit:
    """A row waiting to run `next_step_index`, with everything it has accumulated."""
    row: Dict[str, Any]
    next_step_index: int = 0
    original_index: int = 0
    lineage: Tuple[int, ...] = ()
    history: List[Message] = field(default_factory=list)
    step_history: List[Any] = field(default_factory=list)
    pending_content: List[ContentPart] = field(default_factory=list)

    def spawn(self, variation: Optional[int] = None) -> "WorkUnit":
        """Full, independent copy; explode descendants record their variation index."""
        lineage = self.lineage + (variation,) if variation is not None else self.lineage
        return WorkUnit(
            row=copy.deepcopy(self.row),
            next_step_index=self.next_step_index,
            original_index=self.original_index,
            lineage=lineage,
            history=list(self.history),
            step_history=copy.deepcopy(self.step_history),
            pending_content=list(self.pending_content),
        )

    def view(self) -> Dict[str, Any]:
        """Template namespace: row fields plus `index` and prior `steps`."""
        context = {"index": self.original_index, "steps": self.step_history}
        context.update(self.row)
        return context

    @property
    def label(self) -> str:
        suffix = "".join(f".{i}" for i in self.lineage)
        return f"{self.original_index}{suffix}"


@dataclass
class PluginPacket:
    data: Any = None
    content_parts: List[ContentPart] = field(default_factory=list)


@dataclass
class PluginResult:
    packets: List[PluginPacket] = field(default_factory=list)


@dataclass
class ModelRequest:
    """The single request shape every chat provider must accept."""
    model: str
    messages: List[Message]
    temperature: Optional[float] = None
    json_mode: bool = False
    reasoning_effort: Optional[str] = None
    aspect_ratio: Optional[str] = None

    def to_dict(self):
        return {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "json_mode": self.json_mode,
            "reasoning_effort": self.reasoning_effort,
            "aspect_ratio": self.aspect_ratio,
        }


@dataclass
class ModelResponse:
    text: Optional[str] = None
    images: List[str] = field(default_factory=list)
    audio: Optional[Dict[str, str]] = None

    @staticmethod
    def from_dict(d):
        return ModelResponse(
            text=d.get("text"),
            images=list(d.get("images") or []),
            audio=d.get("audio"),
        )

    def to_dict(self):
        return {"text": self.text, "images": self.images, "audio": self.audio}


@dataclass
class ExtractedContent:
    """The usable payload of a model response, by kind."""
    kind: str  # "text" | "image" | "audio"
    data: str
    extension: str

    def as_part(self) -> ContentPart:
        if self.kind == "image":
            return image_part(self.data)
        if self.kind == "audio":
            return audio_part(self.data, self.extension.lstrip("."))
        return text_part(self.data)


@dataclass
class GenerationResult:
    history_message: Message
    raw_result: Any
    column_value: Any
    content: Optional[ExtractedContent] = None
    artifact_path: Optional[str] = None


@dataclass
class LinkInfo:
    href: str
    text: str
    first_seen_on: str


@dataclass
class CrawlState:
    """Mutable crawl bookkeeping. Visited only grows; remaining only shrinks."""
    seed_url: str
    remaining: int
    visited: Set[str] = field(default_factory=set)
    known_links: Dict[str, LinkInfo] = field(default_factory=dict)
    extracted: List[Dict[str, Any]] = field(default_factory=list)

    def mark_visited(self, url: str):
        self.visited.add(url)

    def consume(self, count: int):
        self.remaining = max(0, self.remaining - count)

    def add_links(self, links: Iterable[Tuple[str, str]], source_url: str) -> int:
        """Records (href, text) pairs; an existing entry keeps its provenance."""
        added = 0
        for href, text in links:
            if href in self.known_links:
                continue
            self.known_links[href] = LinkInfo(href=href, text=text, first_seen_on=source_url)
            added += 1
        return added

    def candidates(self, limit: int) -> List[LinkInfo]:
        unvisited = [info for href, info in self.known_links.items() if href not in self.visited]
        return unvisited[:limit]

    def findings_text(self) -> str:
        if not self.extracted:
            return "None yet."
        return json.dumps(self.extracted, indent=2, ensure_ascii=False)


@dataclass
class PageSnapshot:
    """A rendered page: final URL, HTML and absolute (href, text) links."""
    url: str
    html: str
    title: str = ""
    links: List[Tuple[str, str]] = field(default_factory=list)

    @staticmethod
    def from_dict(d):
        return PageSnapshot(
            url=d["url"],
            html=d.get("html", ""),
            title=d.get("title", ""),
            links=[tuple(link) for link in d.get("links", [])],
        )

    def to_dict(self):
        return {
            "url": self.url,
            "html": self.html,
            "title": self.title,
            "links": [list(link) for link in self.links],
        }


@dataclass
class FetchResponse:
    url: str
    status: int
    text: str
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @staticmethod
    def from_dict(d):
        return FetchResponse(**d)

    def to_dict(self):
        return self.__dict__


@dataclass
class SearchHit:
    """One organic web search result; `content` is filled when pages are fetched."""
    title: str
    link: str
    snippet: str = ""
    position: Optional[int] = None
    content: Optional[str] = None

    @staticmethod
    def from_dict(d):
        return SearchHit(
            title=d.get("title", ""),
            link=d["link"],
            snippet=d.get("snippet", ""),
            position=d.get("position"),
            content=d.get("content"),
        )

    def to_dict(self):
        data = {"title": self.title, "link": self.link, "snippet": self.snippet, "position": self.position}
        if self.content is not None:
            data["content"] = self.content
        return data
