from __future__ import annotations

import unicodedata
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from gamcauth.config import Settings
from gamcauth.logging import get_logger
from gamcauth.service.errors import NotFoundError, ValidationError
from gamcauth.storage.models import SecurityQuestion, UserSecurityQuestion

logger = get_logger(__name__)

MIN_ANSWER_LENGTH = 2
MAX_ANSWER_LENGTH = 100


class SecurityQuestionStore(Protocol):
    def list_security_questions(self, *, active_only: bool = True) -> List[SecurityQuestion]: ...

    def get_security_question(self, question_id: int) -> Optional[SecurityQuestion]: ...

    def list_user_security_questions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserSecurityQuestion]: ...

    def add_user_security_question(
        self, user_id: str, question_id: int, answer_hash: str, *, max_per_user: int
    ) -> UserSecurityQuestion: ...

    def update_user_security_answer(
        self, user_id: str, question_id: int, answer_hash: str
    ) -> Optional[UserSecurityQuestion]: ...

    def deactivate_user_security_question(self, user_id: str, question_id: int) -> bool: ...


def normalize_answer(answer: str) -> str:
    """Canonical form compared at verification time.

    NFKC, case-folded, surrounding whitespace stripped and inner runs of
    whitespace collapsed to one space: "  Río   Seco " and "río seco" match.
    """
    normalized = unicodedata.normalize("NFKC", answer or "")
    return " ".join(normalized.casefold().split())


def validate_answer(answer: str) -> str:
    normalized = normalize_answer(answer)
    if len(normalized) < MIN_ANSWER_LENGTH:
        raise ValidationError(
            f"answer must be at least {MIN_ANSWER_LENGTH} characters", detail={"field": "answer"}
        )
    if len(normalized) > MAX_ANSWER_LENGTH:
        raise ValidationError(
            f"answer must be at most {MAX_ANSWER_LENGTH} characters", detail={"field": "answer"}
        )
    if len(set(normalized.replace(" ", ""))) == 1:
        raise ValidationError("answer cannot be a single repeated character", detail={"field": "answer"})
    return normalized


class SecurityQuestionService:
    """Catalog lookups and per-user question bindings.

    Answers are stored only as argon2id hashes (salted per hash) of the
    normalized answer, prefixed with the deployment pepper when one is set.
    """

    def __init__(
        self,
        store: SecurityQuestionStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self.max_questions = settings.max_security_questions_per_user

    def _hash_answer(self, normalized: str) -> str:
        return self._hasher.hash(self.settings.security_answer_pepper + normalized)

    def _check_answer(self, answer_hash: str, answer: str) -> bool:
        candidate = self.settings.security_answer_pepper + normalize_answer(answer)
        try:
            return self._hasher.verify(answer_hash, candidate)
        except (InvalidHash, VerifyMismatchError):
            return False

    def catalog(self) -> List[SecurityQuestion]:
        return self.store.list_security_questions()

    def _require_question(self, question_id: int) -> SecurityQuestion:
        question = self.store.get_security_question(question_id)
        if question is None or not question.is_active:
            raise ValidationError("unknown security question", detail={"question_id": question_id})
        return question

    def has_questions(self, user_id: str) -> bool:
        return bool(self.store.list_user_security_questions(user_id))

    def challenge_question(self, user_id: str) -> Optional[SecurityQuestion]:
        """The question a password reset will ask: the user's oldest active binding."""
        for binding in self.store.list_user_security_questions(user_id):
            question = self.store.get_security_question(binding.question_id)
            if question is not None and question.is_active:
                return question
        return None

    def setup(self, user_id: str, answers: Sequence[Tuple[int, str]]) -> List[UserSecurityQuestion]:
        if not answers:
            raise ValidationError("at least one security question is required")
        question_ids = [question_id for question_id, _ in answers]
        if len(set(question_ids)) != len(question_ids):
            raise ValidationError("duplicate security questions in request")
        existing = self.store.list_user_security_questions(user_id)
        configured = {b.question_id for b in existing}
        duplicates = configured.intersection(question_ids)
        if duplicates:
            raise ValidationError(
                "security question already configured",
                detail={"question_ids": sorted(duplicates)},
            )
        if len(existing) + len(answers) > self.max_questions:
            raise ValidationError(
                f"a user may configure at most {self.max_questions} security questions",
                detail={"max_questions": self.max_questions, "configured": len(existing)},
            )

        prepared = []
        for question_id, answer in answers:
            self._require_question(question_id)
            prepared.append((question_id, self._hash_answer(validate_answer(answer))))

        created = [
            self.store.add_user_security_question(
                user_id, question_id, answer_hash, max_per_user=self.max_questions
            )
            for question_id, answer_hash in prepared
        ]
        logger.info("security_questions_configured", user_id=user_id, count=len(created))
        return created

    def update(self, user_id: str, question_id: int, answer: str) -> UserSecurityQuestion:
        self._require_question(question_id)
        answer_hash = self._hash_answer(validate_answer(answer))
        binding = self.store.update_user_security_answer(user_id, question_id, answer_hash)
        if binding is None:
            raise NotFoundError("security question not configured", detail={"question_id": question_id})
        logger.info("security_question_updated", user_id=user_id, question_id=question_id)
        return binding

    def remove(self, user_id: str, question_id: int) -> None:
        if not self.store.deactivate_user_security_question(user_id, question_id):
            raise NotFoundError("security question not configured", detail={"question_id": question_id})
        logger.info("security_question_removed", user_id=user_id, question_id=question_id)

    def verify_answer(self, user_id: str, question_id: int, answer: str) -> bool:
        for binding in self.store.list_user_security_questions(user_id):
            if binding.question_id == question_id:
                return self._check_answer(binding.answer_hash, answer)
        return False

    def status(self, user_id: str) -> Dict[str, Any]:
        bindings = self.store.list_user_security_questions(user_id)
        configured_ids = {b.question_id for b in bindings}
        questions = []
        for binding in bindings:
            question = self.store.get_security_question(binding.question_id)
            if question is None:
                continue
            questions.append(
                {
                    "questionId": question.id,
                    "questionText": question.text,
                    "category": question.category.value,
                    "createdAt": binding.created_at.isoformat(),
                    "updatedAt": binding.updated_at.isoformat(),
                }
            )
        available = [q.to_public() for q in self.catalog() if q.id not in configured_ids]
        return {
            "hasSecurityQuestions": bool(bindings),
            "questionsCount": len(bindings),
            "maxQuestions": self.max_questions,
            "questions": questions,
            "availableQuestions": available if len(bindings) < self.max_questions else [],
        }


__all__ = [
    "MIN_ANSWER_LENGTH",
    "MAX_ANSWER_LENGTH",
    "SecurityQuestionStore",
    "normalize_answer",
    "validate_answer",
    "SecurityQuestionService",
]
