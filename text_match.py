"""
Нечёткое сопоставление названий категорий.

- find_similar_categories — подстрока, затем расстояние Левенштейна;
- pick_category_from_seed — выбор категории по первой фразе пользователя
  ("мне нужен кран" → "Краны").

Все функции чистые и работают только со строками в памяти.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from config import (
    CATALOG_FUZZY_MAX_DISTANCE,
    CATEGORY_CONTAINED_SCORE,
    CATEGORY_EXACT_SCORE,
    CATEGORY_JACCARD_HIGH,
    CATEGORY_JACCARD_LOW,
)

_WS_RE = re.compile(r"\s+")

STOP_WORDS: frozenset[str] = frozenset({
    "мне", "меня", "нужен", "нужна", "нужно", "нужны", "ищу", "хочу", "надо",
    "пожалуйста", "плиз", "есть", "по", "для", "и", "а", "ну", "да", "нет", "не",
})

# Частые окончания падежей и множественного числа, от длинных к коротким
_RU_ENDINGS: tuple[str, ...] = (
    "ами", "ями", "ов", "ев", "ых", "их", "ой", "ей", "ам", "ям", "ах", "ях",
    "ы", "и", "а", "я", "е", "у", "ю",
)


def normalize_text(raw: str) -> str:
    """Нижний регистр, ё → е, схлопывание пробелов."""
    return _WS_RE.sub(" ", raw.strip().lower().replace("ё", "е"))


def tokenize(text: str) -> list[str]:
    return [token for token in normalize_text(text).split(" ") if token]


def rough_stem_ru(word: str) -> str:
    """Очень грубый стеммер: "краны" → "кран", "экскаваторы" → "экскаватор"."""
    if len(word) <= 4:
        return word
    for ending in _RU_ENDINGS:
        if word.endswith(ending) and len(word) - len(ending) >= 3:
            return word[: -len(ending)]
    return word


def levenshtein(a: str, b: str) -> int:
    """Классическое расстояние редактирования (вставка, удаление, замена)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def find_similar_categories(
    query: str,
    candidates: Iterable[str],
    limit: int = 5,
    max_distance: int = CATALOG_FUZZY_MAX_DISTANCE,
) -> list[str]:
    """
    Похожие названия категорий.

    Сначала вхождение подстроки в любую сторону, затем (если мест ещё хватает)
    названия на расстоянии Левенштейна не больше max_distance, ближайшие первыми.
    Порядок кандидатов внутри одного прохода сохраняется.
    """
    needle = normalize_text(query)
    if not needle or limit <= 0:
        return []

    names = list(candidates)
    matches: list[str] = []
    for name in names:
        normalized = normalize_text(name)
        if normalized and (needle in normalized or normalized in needle):
            matches.append(name)
    if len(matches) >= limit:
        return matches[:limit]

    fuzzy: list[tuple[int, int, str]] = []
    for position, name in enumerate(names):
        if name in matches:
            continue
        distance = levenshtein(normalize_text(name), needle)
        if distance <= max_distance:
            fuzzy.append((distance, position, name))

    fuzzy.sort()
    for _, _, name in fuzzy:
        if len(matches) >= limit:
            break
        matches.append(name)
    return matches


# ─── Категория по первой фразе ─────────────────────────────────────────────────

@dataclass(frozen=True)
class CategoryPick:
    name: str
    score: float


def _jaccard(a: set[str], b: set[str]) -> float:
    union = len(a | b)
    if not union:
        return 0.0
    return len(a & b) / union


def score_category(seed: str, category: str) -> float:
    """Оценка 0..1 того, что фраза пользователя называет эту категорию."""
    seed_norm = normalize_text(seed)
    cat_norm = normalize_text(category)
    if not seed_norm or not cat_norm:
        return 0.0
    if seed_norm == cat_norm:
        return CATEGORY_EXACT_SCORE
    if seed_norm in cat_norm or cat_norm in seed_norm:
        return CATEGORY_CONTAINED_SCORE

    seed_tokens = {rough_stem_ru(t) for t in tokenize(seed_norm) if t not in STOP_WORDS}
    cat_tokens = {rough_stem_ru(t) for t in tokenize(cat_norm)}

    # Короткое название категории целиком встречается во фразе
    if 0 < len(cat_tokens) <= 2 and cat_tokens <= seed_tokens:
        return CATEGORY_CONTAINED_SCORE

    similarity = _jaccard(seed_tokens, cat_tokens)
    high_threshold, high_score = CATEGORY_JACCARD_HIGH
    low_threshold, low_score = CATEGORY_JACCARD_LOW
    if similarity >= high_threshold:
        return high_score
    if similarity >= low_threshold:
        return low_score
    return 0.0


def pick_category_from_seed(seed: str, categories: Iterable[str]) -> Optional[CategoryPick]:
    """Лучшая категория для фразы; None, если ни одна не набрала очков."""
    best: Optional[CategoryPick] = None
    for name in categories:
        score = score_category(seed, name)
        if best is None or score > best.score:
            best = CategoryPick(name=name, score=score)
    if best is None or best.score <= 0:
        return None
    return best
