import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class ChapterStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    DRAFT = "draft"
    REVISED = "revised"
    APPROVED = "approved"


class OutlineKind(str, Enum):
    MAIN = "main"
    VOLUME = "volume"
    CHAPTER = "chapter"


class SettingCategory(str, Enum):
    RULES = "rules"
    GLOBAL = "global"
    LOCATION = "location"
    FACTION = "faction"
    ITEM = "item"
    HISTORY = "history"
    OTHER = "other"


ALWAYS_INCLUDED_CATEGORIES = {SettingCategory.RULES.value, SettingCategory.GLOBAL.value}
PROTAGONIST_ROLES = {"主角", "protagonist"}


class Chapter(BaseModel):
    id: str
    project_id: str
    title: str = ""
    content: str = ""
    order_index: int = Field(default=0, ge=0)
    word_count: int = 0
    embedding: Optional[List[float]] = None
    version: int = 0
    status: ChapterStatus = ChapterStatus.PENDING
    volume_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.now)


class OutlinePayload(BaseModel):
    """Structured outline body shared by every outline kind.

    Field names are snake_case internally; the camelCase aliases are the
    persisted/wire shape (``oneLiner``, ``themeTags`` ...).
    """

    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    one_liner: str = Field(default="", alias="oneLiner")
    beats: List[str] = Field(default_factory=list)
    theme_tags: List[str] = Field(default_factory=list, alias="themeTags")
    required_entities: List[str] = Field(default_factory=list, alias="requiredEntities")
    focal_entities: List[str] = Field(default_factory=list, alias="focalEntities")
    stakes_delta: str = Field(default="", alias="stakesDelta")
    entry_state: str = Field(default="", alias="entryState")
    exit_state: str = Field(default="", alias="exitState")
    conflict_focus: str = Field(default="", alias="conflictFocus")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class MainOutlinePayload(OutlinePayload):
    kind: Literal["main"] = "main"


class VolumeOutlinePayload(OutlinePayload):
    kind: Literal["volume"] = "volume"
    chapter_count: Optional[int] = Field(default=None, alias="chapterCount")


class ChapterOutlinePayload(OutlinePayload):
    kind: Literal["chapter"] = "chapter"
    target_words: Optional[int] = Field(default=None, alias="targetWords")


AnyOutlinePayload = Annotated[
    Union[MainOutlinePayload, VolumeOutlinePayload, ChapterOutlinePayload],
    Field(discriminator="kind"),
]
_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(AnyOutlinePayload)


def parse_outline_payload(kind: OutlineKind, data: Optional[Dict[str, Any]]) -> OutlinePayload:
    """Validate a free-form payload blob into the typed record for ``kind``."""
    body = dict(data or {})
    body["kind"] = OutlineKind(kind).value
    return _PAYLOAD_ADAPTER.validate_python(body)


class Outline(BaseModel):
    id: str
    project_id: str
    kind: OutlineKind
    payload: AnyOutlinePayload
    chapter_id: Optional[str] = None
    volume_id: Optional[str] = None
    order_index: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def has_beats(self) -> bool:
        return any(beat.strip() for beat in self.payload.beats)


class SceneFrame(BaseModel):
    id: str
    chapter_id: str
    index: int = Field(ge=0)
    purpose: str
    focal_entities: List[str] = Field(default_factory=list)
    beats: List[str] = Field(default_factory=list)
    entry_state: str = ""
    exit_state: str = ""
    target_words: int = 2000


class Character(BaseModel):
    id: str
    project_id: str
    name: str
    role: str = ""
    description: str = ""
    mention_count: int = 0

    @property
    def is_protagonist(self) -> bool:
        return self.role.strip().lower() in PROTAGONIST_ROLES


class WorldSetting(BaseModel):
    id: str
    project_id: str
    title: str
    content: str = ""
    category: str = SettingCategory.OTHER.value
    embedding: Optional[List[float]] = None

    @property
    def always_included(self) -> bool:
        return self.category in ALWAYS_INCLUDED_CATEGORIES

    def render(self) -> str:
        return f"{self.title}: {self.content}"


class SelectionMethod(str, Enum):
    EMBEDDING = "embedding"
    HEURISTIC = "heuristic"
    RECENT = "recent"
    KEYWORD = "keyword"
    ALL = "all"


class ContextSelectionOptions(BaseModel):
    max_count: int = Field(default=5, ge=0)
    token_budget: int = Field(default=1200, ge=0)
    prioritize_recent: bool = True
    include_key_beats: bool = False
    use_embedding: bool = True
    min_relevance: float = 0.6


class SelectedChapter(BaseModel):
    chapter_id: str
    order_index: int
    title: str = ""
    relevance: float = 0.0
    token_estimate: int = 0


class ContextSelection(BaseModel):
    chapters: List[SelectedChapter] = Field(default_factory=list)
    text: str = ""
    token_estimate: int = 0
    method: SelectionMethod = SelectionMethod.RECENT
    avg_relevance: float = 0.0


class SettingSelection(BaseModel):
    settings: List[WorldSetting] = Field(default_factory=list)
    global_settings: List[WorldSetting] = Field(default_factory=list)
    text: str = ""
    global_text: str = ""
    token_estimate: int = 0
    method: SelectionMethod = SelectionMethod.ALL


class RetrievalScores(BaseModel):
    similarity: float = 0.0
    recency: float = 0.0
    role_weight: float = 1.0


class RetrievedContext(BaseModel):
    source_id: str
    source_label: str = ""
    excerpt: str = ""
    score: float = 0.0
    order_index: int = 0
    metadata: RetrievalScores = Field(default_factory=RetrievalScores)


class RetrievalResult(BaseModel):
    contexts: List[RetrievedContext] = Field(default_factory=list)
    prompt: str = ""
    total_candidates: int = 0
    time_window_used: int = 0
    retrieval_method: str = "dual-stage"
    retrieved_at: datetime = Field(default_factory=datetime.now)


class CandidateOutline(OutlinePayload):
    """One outline hypothesis, prior to scoring or merging."""

    def to_payload(self, kind: OutlineKind) -> OutlinePayload:
        return parse_outline_payload(kind, self.model_dump(by_alias=True))


class ScoredCandidate(BaseModel):
    candidate: CandidateOutline
    theme_score: float = 0.0
    progression_score: float = 0.0
    writability_score: float = 0.0
    total_score: float = 0.0


class SynthesisContext(BaseModel):
    prompt: str
    kind: OutlineKind = OutlineKind.VOLUME
    theme_tags: List[str] = Field(default_factory=list)
    characters: List[Character] = Field(default_factory=list)
    project_id: Optional[str] = None


class SynthesisAttempt(BaseModel):
    index: int
    model: str = ""
    temperature: float = 0.7
    success: bool = False
    used_secondary: bool = False
    candidate_count: int = 0
    prompt_hash: str = ""
    response_hash: str = ""
    error: Optional[str] = None
    latency_ms: float = 0.0


class SynthesisResult(BaseModel):
    outlines: List[CandidateOutline] = Field(default_factory=list)
    scored_sets: List[List[ScoredCandidate]] = Field(default_factory=list)
    set_means: List[float] = Field(default_factory=list)
    base_set_index: int = 0
    attempts: List[SynthesisAttempt] = Field(default_factory=list)


class Completion(BaseModel):
    text: str = ""
    model: str = ""
    usage: Dict[str, int] = Field(default_factory=dict)


class RuleCheckResult(BaseModel):
    passed: bool = True
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class EventType(str, Enum):
    CONNECTED = "connected"
    PROGRESS = "progress"
    SCENES_DECOMPOSED = "scenes_decomposed"
    SCENE_START = "scene_start"
    SCENE_CONTENT_CHUNK = "scene_content_chunk"
    SCENE_COMPLETED = "scene_completed"
    SCENE_FAILED = "scene_failed"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_EVENTS = {EventType.COMPLETED, EventType.ERROR}


class GenerationEvent(BaseModel):
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


class QueuePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskRecord(BaseModel):
    id: str
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: QueuePriority = QueuePriority.MEDIUM
    attempts: int = 0
    max_retries: int = 3
    status: str = "pending"
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
