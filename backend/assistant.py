from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import json
import logging
import os
from typing import Iterable, Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from backend.summary_engine import PeriodTotals, format_milliunits, to_milliunits

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 20
DEFAULT_MODEL = "gemini-2.5-flash"

COMMAND_VERBS = {"add", "create", "new", "record"}
COMMAND_OBJECTS = {"account", "category", "income", "expense"}
FILLER_WORDS = {"a", "an", "the", "new", "please"}
ACCOUNT_MARKERS = {"to", "in", "into", "from"}
CATEGORY_MARKERS = {"for", "under"}


class AssistantUnavailable(RuntimeError):
    """Raised when the generative model cannot produce a reply."""


@dataclass(frozen=True)
class AssistantConfig:
    api_key: str | None = None
    model: str = DEFAULT_MODEL


def load_assistant_config() -> AssistantConfig:
    return AssistantConfig(
        api_key=os.getenv("GOOGLE_API_KEY"),
        model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
    )


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class InlineImage:
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class Command:
    """A bookkeeping action parsed from free text.

    ``amount`` is signed milliunits; expenses are negative.
    """

    action: str
    name: str | None = None
    amount: int | None = None
    account: str | None = None
    category: str | None = None
    payee: str | None = None


class GeminiAssistant:
    def __init__(self, config: AssistantConfig) -> None:
        self.config = config

    def generate(self, parts: Sequence[str | InlineImage]) -> str:
        if not self.config.api_key:
            raise AssistantUnavailable("GOOGLE_API_KEY is not configured")
        client = genai.Client(api_key=self.config.api_key)
        contents = [
            types.Part.from_bytes(data=part.data, mime_type=part.mime_type)
            if isinstance(part, InlineImage)
            else part
            for part in parts
        ]
        logger.debug("Sending %d prompt parts to %s", len(contents), self.config.model)
        try:
            response = client.models.generate_content(model=self.config.model, contents=contents)
        except genai_errors.APIError as exc:
            raise AssistantUnavailable("Gemini request failed") from exc
        return response.text or ""


def build_financial_context(totals: PeriodTotals) -> str:
    return (
        "You are a financial advisor assisting a user with their finances. "
        f"They have an income of {format_milliunits(totals.income)} "
        f"and expenses of {format_milliunits(totals.expenses)} per month."
    )


def build_prompt(
    context: str,
    messages: Sequence[ChatMessage],
    images: Iterable[InlineImage] = (),
    history_limit: int = MAX_HISTORY_MESSAGES,
) -> list[str | InlineImage]:
    if not messages:
        raise ValueError("No content is provided for sending chat message.")
    recent = messages[-history_limit:]
    parts: list[str | InlineImage] = [context]
    parts.extend(message.content for message in recent if message.content)
    parts.extend(images)
    return parts


def load_images(raw: str | Sequence[str] | None) -> list[InlineImage]:
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("Images must be a JSON list of data URLs.") from exc
        if not isinstance(raw, list):
            raise ValueError("Images must be a JSON list of data URLs.")
    return [parse_image_data_url(value) for value in raw]


def parse_image_data_url(value: str) -> InlineImage:
    header, separator, payload = value.partition(",")
    if not separator or not header.startswith("data:") or ";" not in header:
        raise ValueError("Image must be a base64 data URL.")
    mime_type = header[len("data:"):header.rindex(";")]
    if not mime_type:
        raise ValueError("Image data URL is missing a MIME type.")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image payload is not valid base64.") from exc
    return InlineImage(mime_type=mime_type, data=data)


def route_message(intent: str | None, text: str) -> Command | None:
    """Return the command to run for ``text``, or ``None`` to answer it as chat.

    An explicit ``intent`` wins; otherwise only text that fully parses as a
    command is treated as one.
    """
    if intent:
        normalized = intent.strip().lower()
        if normalized not in {"chat", "command"}:
            raise ValueError("Intent must be 'chat' or 'command'.")
        return parse_command(text) if normalized == "command" else None
    try:
        return parse_command(text)
    except ValueError:
        return None


def parse_command(text: str) -> Command:
    tokens = _drop_leading_please(_tokenize(text))
    if not tokens or tokens[0].lower() not in COMMAND_VERBS:
        raise ValueError("Commands start with add, create, new or record.")
    object_index = _object_of(tokens)
    if object_index is None:
        raise ValueError("Say what to add: account, category, income or expense.")
    target = tokens[object_index].lower()
    arguments = tokens[object_index + 1:]

    if target in {"account", "category"}:
        name = _strip_name_marker(arguments)
        if not name:
            raise ValueError(f"{target.capitalize()} name required.")
        return Command(action=f"create_{target}", name=name)

    if not arguments:
        raise ValueError("Amount required.")
    amount = _parse_amount(arguments[0])
    slots: dict[str, list[str]] = {"payee": [], "account": [], "category": []}
    slot = "payee"
    for token in arguments[1:]:
        lowered = token.lower()
        if lowered in ACCOUNT_MARKERS:
            slot = "account"
            continue
        if lowered in CATEGORY_MARKERS:
            slot = "category"
            continue
        slots[slot].append(token)
    if target == "expense":
        amount = -amount
    return Command(
        action="create_transaction",
        amount=amount,
        account=" ".join(slots["account"]) or None,
        category=" ".join(slots["category"]) or None,
        payee=" ".join(slots["payee"]) or None,
    )


def _tokenize(text: str) -> list[str]:
    return text.strip().rstrip(".!?").split()


def _drop_leading_please(tokens: list[str]) -> list[str]:
    index = 0
    while index < len(tokens) and tokens[index].lower() == "please":
        index += 1
    return tokens[index:]


def _object_of(tokens: list[str]) -> int | None:
    for index in range(1, len(tokens)):
        lowered = tokens[index].lower()
        if lowered in COMMAND_OBJECTS:
            return index
        if lowered not in FILLER_WORDS:
            return None
    return None


def _strip_name_marker(arguments: list[str]) -> str:
    if arguments and arguments[0].lower() in {"called", "named"}:
        arguments = arguments[1:]
    return " ".join(arguments).strip()


def _parse_amount(token: str) -> int:
    cleaned = token.replace(",", "").lstrip("$€£")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {token}") from exc
    if not value.is_finite() or value <= 0:
        raise ValueError("Amount must be greater than zero.")
    amount = to_milliunits(value)
    if amount == 0:
        raise ValueError("Amount must be at least 0.001.")
    return amount
