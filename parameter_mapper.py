"""
Маппинг имён технических параметров от LLM к именам в хранилище.

LLM генерирует упрощённые имена ("глубина_копания_max"), а в каталоге они
хранятся с полными названиями и единицами ("Макс. глубина копания, мм.").
Единицы измерения тоже расходятся: пользователь говорит в метрах, каталог
хранит миллиметры, а значения приходят с единицами ("6000 мм", "25 т").
Все таблицы заменяемы целиком.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

RangeSuffix = Literal["_min", "_max"]

# Упрощённое имя (без суффикса) → имя параметра в каталоге
PARAMETER_ALIASES: dict[str, str] = {
    # Глубина копания
    "глубина_копания": "Макс. глубина копания, мм.",
    "макс_глубина_копания": "Макс. глубина копания, мм.",

    # Объём ковша
    "объем_ковша": "Объем ковша",
    "объём_ковша": "Объем ковша",
    "емкость_ковша": "Объем ковша",

    # Грузоподъёмность
    "грузоподъемность": "Грузоподъемность",
    "грузоподъёмность": "Грузоподъемность",

    # Мощность
    "мощность": "Мощность двигателя",
    "мощность_двигателя": "Мощность двигателя",
    "номинальная_мощность": "Номин. мощность, кВт.",
    "номин_мощность": "Номин. мощность, кВт.",

    # Вес
    "вес": "Вес в рабочем состоянии",
    "масса": "Вес в рабочем состоянии",
    "рабочий_вес": "Рабочий вес, т.",
    "тоннаж": "Рабочий вес, т.",

    # Высота подъёма
    "высота_подъема": "Высота подъема",
    "высота_подъёма": "Высота подъема",
    "макс_высота_подъема": "Высота подъема",

    # Вылет стрелы
    "вылет_стрелы": "Вылет стрелы",
    "макс_вылет": "Вылет стрелы",
}


@dataclass(frozen=True)
class UnitConversion:
    from_unit: str
    to_unit: str
    factor: float


# Имя параметра в каталоге → пересчёт единиц значения от пользователя
UNIT_CONVERSIONS: dict[str, UnitConversion] = {
    "Макс. глубина копания, мм.": UnitConversion("м", "мм", 1000),
    "Высота подъема": UnitConversion("м", "мм", 1000),
    "Вылет стрелы": UnitConversion("м", "мм", 1000),
}


@dataclass(frozen=True)
class ParameterMapping:
    db_name: str
    suffix: Optional[RangeSuffix]
    original_name: str


def split_suffix(name: str) -> tuple[str, Optional[RangeSuffix]]:
    """Отделяет суффикс диапазона: "вес_max" → ("вес", "_max")."""
    if name.endswith("_min"):
        return name[:-4], "_min"
    if name.endswith("_max"):
        return name[:-4], "_max"
    return name, None


def map_parameter_name(name: str) -> ParameterMapping:
    """
    Преобразует имя параметра от LLM к имени в каталоге.

    Неизвестные имена не считаются ошибкой: возвращается имя без суффикса,
    а хранилище само решает, что с ним делать.
    """
    base, suffix = split_suffix(name)
    db_name = (
        PARAMETER_ALIASES.get(name.lower())
        or PARAMETER_ALIASES.get(base.lower())
        or base
    )
    return ParameterMapping(db_name=db_name, suffix=suffix, original_name=name)


# ─── Единицы измерения в значениях ────────────────────────────────────────────

@dataclass(frozen=True)
class Unit:
    symbol: str
    dimension: str
    factor: float  # множитель к базовой единице измерения


# База: масса в кг, длина в мм, мощность в кВт, объём в литрах
UNITS: dict[str, Unit] = {
    "т": Unit("т", "mass", 1000),
    "кг": Unit("кг", "mass", 1),
    "г": Unit("г", "mass", 0.001),
    "мм": Unit("мм", "length", 1),
    "см": Unit("см", "length", 10),
    "м": Unit("м", "length", 1000),
    "км": Unit("км", "length", 1_000_000),
    "квт": Unit("квт", "power", 1),
    "вт": Unit("вт", "power", 0.001),
    "л.с.": Unit("л.с.", "power", 0.7355),
    "м³": Unit("м³", "volume", 1000),
    "л": Unit("л", "volume", 1),
}

UNIT_ALIASES: dict[str, str] = {
    "t": "т", "тн": "т", "тонна": "т", "тонны": "т", "тонн": "т",
    "kg": "кг", "килограмм": "кг", "килограммов": "кг",
    "mm": "мм", "миллиметров": "мм",
    "cm": "см", "сантиметров": "см",
    "m": "м", "метр": "м", "метра": "м", "метров": "м",
    "km": "км",
    "kw": "квт",
    "w": "вт",
    "лс": "л.с.", "л.с": "л.с.", "hp": "л.с.",
    "м3": "м³", "m3": "м³", "куб": "м³", "куба": "м³", "кубов": "м³",
    "l": "л", "литр": "л", "литра": "л", "литров": "л",
}

# Единица хранения для параметров, в названии которых она не указана
FIELD_UNITS: dict[str, str] = {
    "Вес в рабочем состоянии": "кг",
}

_QUANTITY_RE = re.compile(r"^\s*([+-]?\d+(?:[ \u00a0]\d{3})*(?:[.,]\d+)?)\s*(.*?)\s*$")


def resolve_unit(text: str) -> Optional[Unit]:
    """Единица по её написанию: "тонн" → т, "м3" → м³."""
    key = text.strip().lower()
    if not key:
        return None
    for candidate in (key, key.rstrip(".")):
        symbol = UNIT_ALIASES.get(candidate, candidate)
        if symbol in UNITS:
            return UNITS[symbol]
    return None


def parse_quantity(value: Any) -> tuple[Optional[float], Optional[Unit]]:
    """
    Разбирает значение с единицей измерения.

    "6000 мм" → (6000.0, мм), "12 500 кг" → (12500.0, кг), 25 → (25.0, None).
    Текст, который не начинается с числа, даёт (None, None).
    """
    if isinstance(value, bool):
        return None, None
    if isinstance(value, (int, float)):
        return float(value), None
    if not isinstance(value, str):
        return None, None

    match = _QUANTITY_RE.match(value)
    if not match:
        return None, None
    number = float(match.group(1).replace(" ", "").replace("\u00a0", "").replace(",", "."))
    return number, resolve_unit(match.group(2))


def target_unit(db_name: str) -> Optional[Unit]:
    """Единица хранения параметра: из таблицы или из хвоста имени ("..., мм.")."""
    if db_name in FIELD_UNITS:
        return UNITS[FIELD_UNITS[db_name]]
    conversion = UNIT_CONVERSIONS.get(db_name)
    if conversion is not None:
        return resolve_unit(conversion.to_unit)
    if "," in db_name:
        return resolve_unit(db_name.rsplit(",", 1)[1])
    return None


def _rescale(number: float, unit: Unit, target: Optional[Unit]) -> Optional[float]:
    if target is None or unit.symbol == target.symbol:
        return number
    if unit.dimension != target.dimension:
        return None
    return number * unit.factor / target.factor


def convert_value(db_name: str, value: Any) -> Optional[float]:
    """
    Пересчитывает значение от пользователя в единицы каталога.

    Голое число считается заданным в «пользовательской» единице параметра
    (5 для глубины копания — это метры → 5000 мм). Если единица указана в самом
    значении ("6000 мм", "25 т"), пересчёт идёт из неё. Несовместимая единица
    (тонны для глубины) даёт None.
    """
    number, unit = parse_quantity(value)
    if number is None:
        return None
    if unit is None:
        conversion = UNIT_CONVERSIONS.get(db_name)
        return number * conversion.factor if conversion else number
    return _rescale(number, unit, target_unit(db_name))


def catalog_value(db_name: str, value: Any) -> Optional[float]:
    """Числовое значение параметра из каталога в единицах хранения."""
    number, unit = parse_quantity(value)
    if number is None or unit is None:
        return number
    return _rescale(number, unit, target_unit(db_name))


def get_unit_info(db_name: str) -> Optional[UnitConversion]:
    return UNIT_CONVERSIONS.get(db_name)
