import json
import logging
import random
from typing import List, Optional, Tuple

from pydantic import ValidationError

import config
from models import Question

logger = logging.getLogger(__name__)


def _validate_bank(bank_data, source: str) -> bool:
    if not isinstance(bank_data, dict):
        logger.warning("%s: question bank is %s, expected an object", source, type(bank_data).__name__)
        return False
    if "questions" not in bank_data or not isinstance(bank_data["questions"], list):
        logger.warning("%s: missing or invalid 'questions' field", source)
        return False
    if len(bank_data["questions"]) == 0:
        logger.warning("%s: empty questions list", source)
        return False
    return True


class QuestionBank:
    """Read-only, ordered list of questions the players draw from."""

    def __init__(self, questions: List[Question], title: str = "Untitled"):
        if not questions:
            raise ValueError("Question bank must hold at least one question")
        self.title = title
        self.questions = list(questions)

    def __len__(self) -> int:
        return len(self.questions)

    def get(self, index: int) -> Question:
        return self.questions[index]

    def random_question(self, rng: Optional[random.Random] = None) -> Tuple[int, Question]:
        """Pick a question uniformly at random; returns (index, question)."""
        rng = rng or random
        index = rng.randrange(len(self.questions))
        return index, self.questions[index]

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "questions": [q.model_dump(by_alias=True) for q in self.questions],
        }

    @classmethod
    def from_data(cls, bank_data, source: str = "<data>") -> "QuestionBank":
        if not _validate_bank(bank_data, source):
            raise ValueError(f"Invalid question bank: {source}")
        questions = []
        for i, raw in enumerate(bank_data["questions"]):
            try:
                questions.append(Question.model_validate(raw))
            except ValidationError as e:
                logger.warning("%s: skipping question %d: %s", source, i, e.errors()[0]["msg"])
        bank = cls(questions, title=bank_data.get("title", "Untitled"))
        logger.info("Loaded %d questions from %s", len(bank), source)
        return bank

    @classmethod
    def from_file(cls, path: str) -> "QuestionBank":
        with open(path, encoding="utf-8") as f:
            return cls.from_data(json.load(f), source=path)


_default_bank: Optional[QuestionBank] = None


def default_bank() -> QuestionBank:
    """Question bank at ``config.QUESTION_BANK_PATH``, loaded once."""
    global _default_bank
    if _default_bank is None:
        _default_bank = QuestionBank.from_file(config.QUESTION_BANK_PATH)
    return _default_bank
