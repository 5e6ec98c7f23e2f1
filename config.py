"""
Конфигурация ассистента подбора спецтехники.

Параметры LLM-провайдеров, диалога, индекса каталога и поиска собраны здесь,
чтобы поведение можно было менять через .env без правки кода.
"""

from __future__ import annotations

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ─── Пути проекта ──────────────────────────────────────────────────────────────
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
LOGS_DIR = BASE_DIR / "logs"

DATA_DIR.mkdir(exist_ok=True)
LOGS_DIR.mkdir(exist_ok=True)

CATALOG_SEED_PATH = Path(os.getenv("CATALOG_SEED_PATH", str(DATA_DIR / "equipment.json")))

# ─── Логирование ───────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = LOGS_DIR / "assistant.log"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ─── LLM-провайдеры ────────────────────────────────────────────────────────────
KNOWN_PROVIDERS: tuple[str, ...] = ("groq", "ollama", "openai")

# Чат-провайдер фиксирован: от него зависит совместимость промпта и формата ответа.
# Из окружения не читается.
LLM_CHAT_PROVIDER = "groq"

# Провайдеры, которые не умеют embeddings, и замена для них.
EMBEDDINGS_UNSUPPORTED: frozenset[str] = frozenset({"groq"})
EMBEDDINGS_SUBSTITUTE_PROVIDER = "ollama"

DEFAULT_GROQ_CHAT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_OLLAMA_CHAT_MODEL = "qwen2.5:7b-instruct-q4_K_M"
DEFAULT_OPENAI_CHAT_MODEL = "gpt-4o-mini"

LLM_MODEL = os.getenv("LLM_MODEL", DEFAULT_GROQ_CHAT_MODEL).strip() or DEFAULT_GROQ_CHAT_MODEL
EMBED_MODEL = os.getenv("EMBED_MODEL", "nomic-embed-text")

# LLM_MODEL_GROQ / LLM_MODEL_OLLAMA / LLM_MODEL_OPENAI: явная модель для провайдера
LLM_MODEL_OVERRIDES: dict[str, str] = {
    name: os.getenv(f"LLM_MODEL_{name.upper()}", "").strip()
    for name in KNOWN_PROVIDERS
    if os.getenv(f"LLM_MODEL_{name.upper()}", "").strip()
}


def parse_provider_list(raw: str | None, default: tuple[str, ...] = ("ollama",)) -> tuple[str, ...]:
    """Разбирает список провайдеров через запятую: неизвестные и повторы отбрасываются."""
    if not raw:
        return default
    result: list[str] = []
    for item in raw.split(","):
        name = item.strip()
        if name in KNOWN_PROVIDERS and name not in result:
            result.append(name)
    return tuple(result) or default


LLM_EMBEDDINGS_PROVIDER = os.getenv("LLM_EMBEDDINGS_PROVIDER", "ollama").strip() or "ollama"
LLM_FALLBACK_PROVIDERS = parse_provider_list(os.getenv("LLM_FALLBACK_PROVIDERS"))
LLM_FALLBACK_SILENT = _env_bool("LLM_FALLBACK_SILENT")
LLM_DEBUG = _env_bool("LLM_DEBUG")

GROQ_API_KEY = os.getenv("GROQ_API_KEY") or os.getenv("LLM_API_KEY", "")
GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://127.0.0.1:11434")
OLLAMA_ENABLED = _env_bool("OLLAMA_ENABLED", True)

# Таймауты (секунды): локальные модели на CPU бывают медленными
LLM_CLOUD_TIMEOUT: float = float(os.getenv("LLM_CLOUD_TIMEOUT", "30"))
LLM_LOCAL_TIMEOUT: float = float(os.getenv("LLM_LOCAL_TIMEOUT", "120"))
LLM_CLOUD_PING_TIMEOUT: float = 5.0
LLM_LOCAL_PING_TIMEOUT: float = 3.0

# ─── Диалог ────────────────────────────────────────────────────────────────────
DIALOG_MAX_TURNS: int = int(os.getenv("LLM_DIALOG_MAX_TURNS", "6") or 6)
DIALOG_MAX_CONTEXT_MESSAGES: int = int(os.getenv("LLM_DIALOG_MAX_CONTEXT_MESSAGES", "20") or 20)
DIALOG_TEMPERATURE: float = 0.1
SEARCH_SUMMARY_MAX_CHARS: int = 1000

DIALOG_SYSTEM_PROMPT = """
Ты помощник по подбору промышленной техники.
Твоя задача — В ДИАЛОГЕ преобразовать запрос пользователя на русском языке в JSON-объект SearchQuery.

Ты всегда отвечаешь СТРОГО валидным JSON без комментариев и пояснений.
Формат ответа ТОЛЬКО один из:

1) {"action":"ask","question":"..."}
   Используй, если не хватает данных или есть неоднозначность (1 вопрос за шаг).

2) {"action":"final","query":{...}}
   Используй, когда достаточно данных. query должен соответствовать SearchQuery:
   {
     "text"?: string;
     "category"?: string;
     "subcategory"?: string;
     "brand"?: string;
     "region"?: string;
     "parameters"?: Record<string, string | number>;
     "limit"?: number;
   }

Правила:
- Не придумывай параметры, которые явно не следуют из диалога.
- "text" — краткая суть запроса (2-10 слов).
- "parameters" используй для тех. характеристик (масса, тоннаж, объём ковша, мощность и т.п.).
- Имена параметров: только буквы, цифры и подчёркивания, например "грузоподъемность".
- Если есть условия "более/больше/от" — суффикс "_min" (например "грузоподъемность_min": 80).
- Если есть условия "менее/меньше/до" — суффикс "_max" (например "тоннаж_max": 25).
- Если пользователь говорит, что хочет завершить (например /done), не задавай вопросы — верни best-effort final.
""".strip()

DIALOG_TURN_LIMIT_NUDGE = (
    "Лимит уточнений достигнут. Больше не задавай вопросов: "
    "сформируй best-effort {\"action\":\"final\",\"query\":{...}} по уже известным данным."
)

DIALOG_FINAL_MARKER = '{"action":"final"}'

# ─── Индекс каталога ───────────────────────────────────────────────────────────
CATALOG_INDEX_REFRESH_MINUTES: float = float(os.getenv("CATALOG_INDEX_REFRESH_MINUTES", "5"))
CATALOG_FUZZY_MAX_DISTANCE: int = int(os.getenv("CATALOG_FUZZY_MAX_DISTANCE", "3"))

# Оценки сопоставления «первой фразы» пользователя с категорией
CATEGORY_EXACT_SCORE = 1.0
CATEGORY_CONTAINED_SCORE = 0.92
CATEGORY_JACCARD_HIGH = (0.6, 0.85)
CATEGORY_JACCARD_LOW = (0.34, 0.75)
CATEGORY_PICK_MIN_SCORE: float = float(os.getenv("CATEGORY_PICK_MIN_SCORE", "0.75"))

# ─── Поиск ─────────────────────────────────────────────────────────────────────
SEARCH_DEFAULT_LIMIT = 10
SEARCH_MAX_LIMIT = 100
SEARCH_MIN_FTS_RESULTS = 3
SEARCH_PARAMETER_OVERFETCH = 5
ENABLE_VECTOR_SEARCH = _env_bool("ENABLE_VECTOR_SEARCH", True)
# Векторы для ChromaDB считаются через фабрику провайдеров (EMBED_MODEL);
# при выключении используется встроенная embedding-функция коллекции
USE_FACTORY_EMBEDDINGS = _env_bool("USE_FACTORY_EMBEDDINGS", True)
EMBED_BATCH_SIZE: int = int(os.getenv("EMBED_BATCH_SIZE", "32"))

EXAMPLE_QUERIES: list[str] = [
    "Нужен экскаватор с глубиной копания до 6 метров",
    "Кран грузоподъемностью более 50 тонн",
    "Бульдозер Komatsu в Московской области",
    "Фронтальный погрузчик с объемом ковша от 3 м³",
]

# ─── ChromaDB (эталонное хранилище каталога) ──────────────────────────────────
CHROMA_PERSIST_DIR = os.getenv("CHROMA_PERSIST_DIR", str(BASE_DIR / "chroma_db"))
CHROMA_COLLECTION_NAME = os.getenv("CHROMA_COLLECTION_NAME", "equipment")
CHROMA_HOST = os.getenv("CHROMA_HOST", "")
CHROMA_PORT = int(os.getenv("CHROMA_PORT", "8000"))
STORAGE_MAX_RETRIES: int = 3

# ─── Telegram ──────────────────────────────────────────────────────────────────
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")

TELEGRAM_WELCOME_TEXT = (
    "Здравствуйте! Я помогу подобрать спецтехнику из каталога. "
    "Опишите своими словами, что вам нужно, например: "
    "«Нужен кран грузоподъемностью более 50 тонн»."
)
