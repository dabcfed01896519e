import re
import json
import random
import asyncio
import logging
import time
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

import config
from errors import NoQuestions

logger = logging.getLogger(__name__)

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500
MIN_OPTIONS = 2
MAX_OPTIONS = 6


def sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from untrusted text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class QuestionSourceError(Exception):
    """Raised when the question bank cannot supply a batch."""
    reason = "question_source_unavailable"


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    options: List[str]
    correct_index: int
    category: Optional[str] = None

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        v = sanitize_text(v)[:MAX_QUESTION_TEXT_LENGTH]
        if not v:
            raise ValueError('Question text must not be empty')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        if not (MIN_OPTIONS <= len(v) <= MAX_OPTIONS):
            raise ValueError(f'Question must have {MIN_OPTIONS}-{MAX_OPTIONS} options')
        return [sanitize_text(opt)[:MAX_OPTION_LENGTH] for opt in v]

    @field_validator('category')
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return sanitize_text(v) or None

    @model_validator(mode='after')
    def check_correct_index(self) -> 'Question':
        if not (0 <= self.correct_index < len(self.options)):
            raise ValueError('correct_index out of range')
        return self

    def public_view(self) -> dict:
        """Question as shown to players: never includes the correct option."""
        return {"text": self.text, "options": list(self.options), "category": self.category}


def parse_questions(records: list) -> List[Question]:
    """Validate raw bank records, dropping (and logging) the invalid ones."""
    questions = []
    for i, record in enumerate(records):
        try:
            questions.append(Question.model_validate(record))
        except ValidationError as e:
            logger.warning("Skipping invalid question record %d: %s", i, e.errors()[0].get("msg"))
    return questions


def _matches(question: Question, category: Optional[str]) -> bool:
    if not category:
        return True
    return (question.category or "").lower() == category.lower()


class LocalQuestionBank:
    """Question bank backed by a JSON file: ``[{text, options, correct_index, category}]``."""

    def __init__(self, path: str):
        self.path = path
        self._questions: Optional[List[Question]] = None

    def _load(self) -> List[Question]:
        if self._questions is None:
            try:
                with open(self.path, encoding="utf-8") as f:
                    records = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Could not load question bank %s: %s", self.path, e)
                raise QuestionSourceError() from e
            if isinstance(records, dict):
                records = records.get("questions", [])
            self._questions = parse_questions(records)
            logger.info("Loaded %d questions from %s", len(self._questions), self.path)
        return self._questions

    async def fetch(self, count: int, category: Optional[str] = None) -> List[Question]:
        pool = [q for q in self._load() if _matches(q, category)]
        if not pool:
            raise NoQuestions()
        return random.sample(pool, min(count, len(pool)))


class RemoteQuestionBank:
    """Question bank served over HTTP: ``GET <url>?count=N&category=C``."""

    def __init__(self, url: str):
        self.url = url

    def _fetch_sync(self, count: int, category: Optional[str]) -> List[Question]:
        params: dict = {"count": count}
        if category:
            params["category"] = category

        for attempt in range(1, config.QUESTION_SOURCE_MAX_RETRIES + 1):
            try:
                logger.info("Question bank attempt %d/%d (count=%d, category=%s)",
                            attempt, config.QUESTION_SOURCE_MAX_RETRIES, count, category)
                response = requests.get(self.url, params=params, timeout=config.QUESTION_SOURCE_TIMEOUT)
                response.raise_for_status()
                records = response.json()
                if isinstance(records, dict):
                    records = records.get("questions", [])
                if not isinstance(records, list):
                    logger.warning("Attempt %d: question bank returned %s, expected a list",
                                   attempt, type(records).__name__)
                else:
                    questions = [q for q in parse_questions(records) if _matches(q, category)]
                    if questions:
                        random.shuffle(questions)
                        return questions[:count]
                    logger.warning("Attempt %d: question bank returned no usable questions", attempt)
            except requests.Timeout:
                logger.warning("Attempt %d: question bank timed out after %ds",
                               attempt, config.QUESTION_SOURCE_TIMEOUT)
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("Attempt %d: failed to parse question bank response: %s", attempt, e)
            except requests.RequestException as e:
                logger.error("Attempt %d: HTTP error calling question bank: %s", attempt, e)
            if attempt < config.QUESTION_SOURCE_MAX_RETRIES:
                time.sleep(2 ** attempt)

        raise QuestionSourceError()

    async def fetch(self, count: int, category: Optional[str] = None) -> List[Question]:
        return await asyncio.to_thread(self._fetch_sync, count, category)


def create_question_source():
    if config.QUESTION_BANK_URL:
        logger.info("Using remote question bank at %s", config.QUESTION_BANK_URL)
        return RemoteQuestionBank(config.QUESTION_BANK_URL)
    return LocalQuestionBank(config.QUESTION_BANK_PATH)
