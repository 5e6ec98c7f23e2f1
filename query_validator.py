"""
Валидатор SearchQuery, полученного от языковой модели.

Единственная граница между свободным выводом модели и хранилищем:
всё, что не проходит белый список, отбрасывается. Проблемы, которые удалось
исправить (обрезка, приведение типов), возвращаются как замечания, а не
исключения. SchemaError — только если кандидат не объект или после очистки
не осталось ни одного поля.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from config import SEARCH_MAX_LIMIT
from errors import SchemaError
from logger import get_logger, log_issues
from models import ParameterValue, SearchQuery

log = get_logger(__name__)

TEXT_MAX_LENGTH = 500
FILTER_MAX_LENGTH = 100
PARAMETER_KEY_MAX_LENGTH = 100
PARAMETER_VALUE_MAX_LENGTH = 200

STRING_FIELDS: dict[str, int] = {
    "text": TEXT_MAX_LENGTH,
    "category": FILTER_MAX_LENGTH,
    "subcategory": FILTER_MAX_LENGTH,
    "brand": FILTER_MAX_LENGTH,
    "region": FILTER_MAX_LENGTH,
}

_PARAMETER_KEY_RE = re.compile(r"^[A-Za-z0-9_а-яА-ЯёЁ]+$")
_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")

# Имена параметров, в которых встречаются эти слова, отбрасываются целиком
SQL_KEYWORDS: frozenset[str] = frozenset({
    "select", "insert", "update", "delete", "drop", "truncate", "alter",
    "create", "union", "exec", "execute", "grant", "revoke", "merge",
})


def is_valid_parameter_key(key: Any) -> bool:
    """Только буквы (латиница и кириллица), цифры и подчёркивания."""
    if not isinstance(key, str) or not key or len(key) > PARAMETER_KEY_MAX_LENGTH:
        return False
    if not _PARAMETER_KEY_RE.match(key):
        return False
    tokens = set(key.lower().split("_"))
    return not tokens & SQL_KEYWORDS


def _type_name(value: Any) -> str:
    return type(value).__name__


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clean_string(field: str, value: Any, max_length: int, issues: list[str]) -> Optional[str]:
    if not isinstance(value, str):
        issues.append(f"{field} должен быть строкой, получено: {_type_name(value)}")
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if len(trimmed) > max_length:
        issues.append(f"{field} обрезан до {max_length} символов")
        return trimmed[:max_length]
    return trimmed


def _clamp_limit(value: int) -> int:
    return min(max(value, 1), SEARCH_MAX_LIMIT)


def _clean_limit(value: Any, issues: list[str]) -> Optional[int]:
    if _is_number(value):
        if not math.isfinite(value):
            issues.append(f"limit не является конечным числом: {value} (игнорирован)")
            return None
        floored = math.floor(value)
        limit = _clamp_limit(floored)
        if floored != value or limit != floored:
            issues.append(f"limit нормализован: {value} → {limit}")
        return limit

    if isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if not match:
            issues.append(f"limit не является числом: {value!r} (игнорирован)")
            return None
        limit = _clamp_limit(int(match.group(1)))
        issues.append(f"limit преобразован из строки: {value!r} → {limit}")
        return limit

    issues.append(f"limit должен быть числом, получено: {_type_name(value)}")
    return None


def _clean_parameters(value: Any, issues: list[str]) -> Optional[dict[str, ParameterValue]]:
    if not isinstance(value, dict):
        issues.append(f"parameters должен быть объектом, получено: {_type_name(value)}")
        return None

    cleaned: dict[str, ParameterValue] = {}
    for key, raw in value.items():
        if not is_valid_parameter_key(key):
            issues.append(f"Некорректное имя параметра: {str(key)[:60]!r} (пропущено)")
            continue

        if _is_number(raw):
            if math.isfinite(raw):
                cleaned[key] = raw
            else:
                issues.append(f"Параметр {key!r} имеет некорректное числовое значение: {raw}")
        elif isinstance(raw, str):
            trimmed = raw.strip()
            if not trimmed:
                issues.append(f"Параметр {key!r} имеет пустое значение (пропущено)")
            elif len(trimmed) > PARAMETER_VALUE_MAX_LENGTH:
                cleaned[key] = trimmed[:PARAMETER_VALUE_MAX_LENGTH]
                issues.append(f"Значение параметра {key!r} обрезано до {PARAMETER_VALUE_MAX_LENGTH} символов")
            else:
                cleaned[key] = trimmed
        else:
            issues.append(f"Параметр {key!r} имеет некорректный тип: {_type_name(raw)} (пропущено)")

    return cleaned or None


def validate_with_issues(candidate: Any) -> tuple[SearchQuery, list[str]]:
    """Проверяет кандидата и возвращает очищенный запрос вместе с замечаниями."""
    if not isinstance(candidate, dict):
        raise SchemaError(f"SearchQuery должен быть объектом, получено: {_type_name(candidate)}")

    fields: dict[str, Any] = {}
    issues: list[str] = []

    for name, max_length in STRING_FIELDS.items():
        if name in candidate:
            cleaned = _clean_string(name, candidate[name], max_length, issues)
            if cleaned is not None:
                fields[name] = cleaned

    if "limit" in candidate:
        limit = _clean_limit(candidate["limit"], issues)
        if limit is not None:
            fields["limit"] = limit

    if "parameters" in candidate:
        parameters = _clean_parameters(candidate["parameters"], issues)
        if parameters is not None:
            fields["parameters"] = parameters

    if not fields:
        raise SchemaError("SearchQuery не содержит валидных полей после валидации", issues)

    return SearchQuery(**fields), issues


def validate(candidate: Any) -> SearchQuery:
    """Проверка и нормализация SearchQuery; замечания пишутся в лог."""
    query, issues = validate_with_issues(candidate)
    log_issues(log, "Замечания при валидации SearchQuery", issues)
    return query
