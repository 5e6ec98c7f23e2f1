"""
Telegram-бот подбора спецтехники на aiogram 3.x.

Отдельный асинхронный процесс, который подключается к единой
бизнес-логике через process_message() из main.py.

Пользователь пишет запрос свободным текстом; reply-кнопка «Новый поиск»
и команда /reset сбрасывают диалог.
"""

from __future__ import annotations

import asyncio
import html
import uuid

from aiogram import Bot, Dispatcher, F, Router
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.types import KeyboardButton, Message, ReplyKeyboardMarkup

from catalog import format_price
from config import TELEGRAM_BOT_TOKEN, TELEGRAM_WELCOME_TEXT
from logger import get_logger
from main import process_message, reset_session
from models import ChatAction, ChatRequest, ChatResponse, EquipmentSummary

log = get_logger(__name__)

router = Router()

NEW_SEARCH_BUTTON = "🔄 Новый поиск"

# Связка Telegram user_id → session_id для сохранения контекста
_user_sessions: dict[int, str] = {}


def _session_id(user_id: int) -> str:
    """Возвращает (или создаёт) session_id для Telegram-пользователя."""
    if user_id not in _user_sessions:
        _user_sessions[user_id] = f"tg_{user_id}_{uuid.uuid4().hex[:8]}"
    return _user_sessions[user_id]


def _reset_session(user_id: int) -> None:
    """Сбрасывает сессию пользователя вместе с историей диалога."""
    session_id = _user_sessions.pop(user_id, None)
    if session_id:
        reset_session(session_id)


# ─── Reply-клавиатура (постоянная) ─────────────────────────────────────────────

_MAIN_KEYBOARD = ReplyKeyboardMarkup(
    keyboard=[[KeyboardButton(text=NEW_SEARCH_BUTTON)]],
    resize_keyboard=True,
    is_persistent=True,
)


# ─── Утилиты ──────────────────────────────────────────────────────────────────

def _format_item(position: int, item: EquipmentSummary) -> str:
    """Карточка техники в HTML-разметке Telegram."""
    title = html.escape(item.name)
    origin = ", ".join(html.escape(part) for part in (item.brand, item.category) if part)
    lines = [f"{position}. <b>{title}</b>" + (f" ({origin})" if origin else "")]
    lines.append(f"💰 {html.escape(format_price(item.price))}")
    params = list(item.main_parameters.items())[:3]
    if params:
        lines.append(", ".join(f"{html.escape(str(k))}: {html.escape(str(v))}" for k, v in params))
    return "\n".join(lines)


def render_response(response: ChatResponse) -> str:
    """Текст ответа для Telegram (HTML)."""
    if response.action != ChatAction.SHOW_RESULTS or not response.items:
        return html.escape(response.reply)

    header = f"Нашёл <b>{response.total}</b> подходящих позиций:"
    cards = "\n\n".join(_format_item(i, item) for i, item in enumerate(response.items, start=1))
    footer = "Можно уточнить запрос: например, «подешевле» или «другой бренд»."
    return f"{header}\n\n{cards}\n\n{footer}"


async def _send_response(message: Message, response: ChatResponse) -> None:
    await message.answer(
        render_response(response),
        parse_mode=ParseMode.HTML,
        reply_markup=_MAIN_KEYBOARD,
    )


# ─── Обработчики ──────────────────────────────────────────────────────────────

@router.message(Command("start"))
async def cmd_start(message: Message) -> None:
    """Обработчик команды /start — приветствие."""
    _reset_session(message.from_user.id)
    await message.answer(TELEGRAM_WELCOME_TEXT, reply_markup=_MAIN_KEYBOARD)


@router.message(Command("reset"))
@router.message(F.text == NEW_SEARCH_BUTTON)
async def cmd_reset(message: Message) -> None:
    """Новый поиск: история диалога очищается."""
    _reset_session(message.from_user.id)
    await message.answer(
        "Начнём заново. Опишите, какая техника вам нужна.",
        reply_markup=_MAIN_KEYBOARD,
    )


@router.message(F.text)
async def msg_free_text(message: Message) -> None:
    """Свободный текстовый ввод — очередной ход диалога."""
    session = _session_id(message.from_user.id)
    request = ChatRequest(message=message.text or "", session_id=session, source="telegram")
    response = await process_message(request)
    await _send_response(message, response)


# ─── Запуск бота ──────────────────────────────────────────────────────────────

async def run_bot() -> None:
    """Запуск Telegram-бота (long-polling)."""
    if not TELEGRAM_BOT_TOKEN:
        log.critical("TELEGRAM_BOT_TOKEN не задан в .env!")
        return

    bot = Bot(token=TELEGRAM_BOT_TOKEN)
    dp = Dispatcher()
    dp.include_router(router)

    log.info("Telegram-бот запущен (long-polling) …")
    try:
        await dp.start_polling(bot, allowed_updates=["message"])
    finally:
        await bot.session.close()


if __name__ == "__main__":
    asyncio.run(run_bot())
