import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

import config

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_OPTION_LENGTH = 500


def sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from user-visible text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def clean_name(name) -> str:
    """Sanitize a player name; raises ValueError when nothing usable is left."""
    if not isinstance(name, str):
        raise ValueError("Name must be a string")
    name = sanitize_text(name)
    if not name or len(name) > config.MAX_NAME_LENGTH:
        raise ValueError(f"Name must be 1-{config.MAX_NAME_LENGTH} characters")
    return name


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    text: str
    options: List[str]
    correct_answer: str = Field(alias="correctAnswer")

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
        v = [sanitize_text(opt)[:MAX_OPTION_LENGTH] for opt in v]
        if len(v) < 2:
            raise ValueError('Question must have at least 2 options')
        if len(set(v)) != len(v):
            raise ValueError('Question options must be unique')
        return v

    @field_validator('correct_answer')
    @classmethod
    def validate_correct_answer(cls, v: str) -> str:
        return sanitize_text(v)[:MAX_OPTION_LENGTH]

    @model_validator(mode='after')
    def check_correct_answer(self):
        if self.correct_answer not in self.options:
            raise ValueError('correct_answer must be one of the options')
        return self


class RoomCreateRequest(BaseModel):
    name: str
    player_id: str
    room_id: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return clean_name(v)

    @field_validator('player_id')
    @classmethod
    def validate_player_id(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 64:
            raise ValueError('player_id must be 1-64 characters')
        return v

    @field_validator('room_id')
    @classmethod
    def validate_room_id(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        if not re.fullmatch(r'[A-Z0-9]{5,7}', v):
            raise ValueError('Room code must be 5-7 letters or digits')
        return v
