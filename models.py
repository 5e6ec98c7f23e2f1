"""
Pydantic-модели данных ассистента.

Используются клиентами LLM, диалоговым билдером, индексом каталога,
хранилищем и API-слоем для единообразной валидации и сериализации.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ParameterValue = Union[int, float, str]
SearchStrategy = Literal["fts", "vector", "mixed"]


# ─── Протокол LLM ──────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletion(BaseModel):
    """Ответ chat completion, приведённый к единому виду."""

    role: Literal["assistant"] = "assistant"
    content: str
    usage: Optional[TokenUsage] = None


class EmbeddingResult(BaseModel):
    vectors: list[list[float]]
    usage: Optional[TokenUsage] = None


# ─── Структурированный запрос ─────────────────────────────────────────────────

class SearchQuery(BaseModel):
    """Проверенный запрос к каталогу. Создаётся только валидатором."""

    text: Optional[str] = Field(None, description="Суть запроса для семантического ранжирования")
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    region: Optional[str] = None
    parameters: Optional[dict[str, ParameterValue]] = Field(
        None,
        description="Имя параметра → значение; суффиксы _min/_max задают границы диапазона",
    )
    limit: Optional[int] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class AskStep(BaseModel):
    action: Literal["ask"] = "ask"
    question: str


class FinalStep(BaseModel):
    action: Literal["final"] = "final"
    query: SearchQuery
    issues: list[str] = Field(default_factory=list)


QueryStep = Union[AskStep, FinalStep]


# ─── Каталог ───────────────────────────────────────────────────────────────────

class EquipmentSummary(BaseModel):
    id: str
    name: str
    category: str = ""
    brand: str = ""
    price: Optional[Union[float, int, str]] = Field(None, description="None — цена по запросу")
    main_parameters: dict[str, ParameterValue] = Field(default_factory=dict)


class EquipmentRecord(BaseModel):
    """Карточка техники для загрузки в эталонное хранилище."""

    id: str
    name: str
    category: str = ""
    subcategory: str = ""
    brand: str = ""
    region: str = ""
    price: Optional[Union[float, int, str]] = None
    description: str = ""
    main_parameters: dict[str, ParameterValue] = Field(default_factory=dict)
    is_active: bool = True


class CategoryInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    count: int


class ParameterInfo(BaseModel):
    name: str
    count: int


class CatalogStats(BaseModel):
    """Результат агрегирующих запросов к хранилищу."""

    categories: list[CategoryInfo] = Field(default_factory=list)
    brands: list[CategoryInfo] = Field(default_factory=list)
    regions: list[CategoryInfo] = Field(default_factory=list)
    total_items: int = 0


class CatalogIndex(BaseModel):
    """Снимок статистики каталога. После публикации не изменяется."""

    model_config = ConfigDict(frozen=True)

    categories: tuple[CategoryInfo, ...] = ()
    brands: tuple[CategoryInfo, ...] = ()
    regions: tuple[CategoryInfo, ...] = ()
    total_items: int = 0
    last_updated: datetime


class CatalogSuggestions(BaseModel):
    similar_categories: list[str] = Field(default_factory=list)
    popular_categories: list[CategoryInfo] = Field(default_factory=list)
    available_brands: list[str] = Field(default_factory=list)
    example_queries: list[str] = Field(default_factory=list)


class CatalogSearchResult(BaseModel):
    items: list[EquipmentSummary] = Field(default_factory=list)
    total: int = 0
    used_strategy: SearchStrategy = "fts"
    suggestions: Optional[CatalogSuggestions] = None
    message: Optional[str] = None


# ─── API: запрос / ответ ──────────────────────────────────────────────────────

class ChatAction(str, Enum):
    ASK_QUESTION = "ask_question"
    SHOW_RESULTS = "show_results"
    NO_RESULTS = "no_results"
    ERROR = "error"


class ChatRequest(BaseModel):
    message: str
    session_id: str
    source: str = "web"  # web | telegram


class SessionRequest(BaseModel):
    session_id: str


class ChatResponse(BaseModel):
    reply: str
    action: ChatAction = ChatAction.ASK_QUESTION
    query: Optional[SearchQuery] = None
    items: list[EquipmentSummary] = Field(default_factory=list)
    total: int = 0
    strategy: Optional[SearchStrategy] = None
    suggestions: Optional[CatalogSuggestions] = None
