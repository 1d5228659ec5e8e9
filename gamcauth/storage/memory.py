from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from gamcauth.logging import get_logger
from gamcauth.storage.errors import ConstraintViolation
from gamcauth.storage.models import (
    PasswordResetToken,
    QuestionCategory,
    Role,
    SecurityQuestion,
    User,
    UserSecurityQuestion,
    utcnow,
)

DEFAULT_SECURITY_QUESTIONS = [
    ("¿Cuál es el nombre de su primera mascota?", QuestionCategory.PERSONAL),
    ("¿En qué ciudad nació su madre?", QuestionCategory.PERSONAL),
    ("¿Cuál es el segundo nombre de su padre?", QuestionCategory.PERSONAL),
    ("¿Cómo se llamaba su escuela primaria?", QuestionCategory.EDUCATION),
    ("¿Cuál era el nombre de su profesor favorito?", QuestionCategory.EDUCATION),
    ("¿En qué unidad del GAMC trabajó por primera vez?", QuestionCategory.PROFESSIONAL),
    ("¿Cuál fue el nombre de su primer jefe?", QuestionCategory.PROFESSIONAL),
    ("¿Cuál es su comida favorita?", QuestionCategory.PREFERENCES),
    ("¿Cuál es su libro favorito?", QuestionCategory.PREFERENCES),
    ("¿Cuál es el nombre de la calle donde creció?", QuestionCategory.GENERAL),
]


class MemoryStore:
    """In-memory store for users, credentials, security questions and reset tokens.

    All mutations go through ``_data_lock`` so counters and single-use
    transitions stay atomic across threads. With ``persist=True`` the state
    is snapshotted to ``{fs_root}/state/memory_store.json`` after each write.
    """

    def __init__(self, fs_root: str = "/tmp/gamc-auth", *, persist: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.security_questions: Dict[int, SecurityQuestion] = {}
        self.user_security_questions: Dict[str, UserSecurityQuestion] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist

        if not (persist and self._load_state()):
            self.default_security_questions()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def default_security_questions(self) -> None:
        with self._data_lock:
            for index, (text, category) in enumerate(DEFAULT_SECURITY_QUESTIONS, start=1):
                self.security_questions[index] = SecurityQuestion(
                    id=index, text=text, category=category, sort_order=index
                )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: Role = Role.OUTPUT,
        org_unit_id: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                role=Role(role),
                org_unit_id=org_unit_id,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return user

    def set_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            self._persist_state()
            return user

    def record_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login = utcnow()
                self._persist_state()

    # -- credentials -------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            user.password_changed_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- security questions ------------------------------------------------

    def list_security_questions(self, *, active_only: bool = True) -> List[SecurityQuestion]:
        with self._data_lock:
            questions = [
                q for q in self.security_questions.values() if q.is_active or not active_only
            ]
            return sorted(questions, key=lambda q: (q.sort_order, q.id))

    def get_security_question(self, question_id: int) -> Optional[SecurityQuestion]:
        with self._data_lock:
            return self.security_questions.get(question_id)

    def list_user_security_questions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[UserSecurityQuestion]:
        with self._data_lock:
            bindings = [
                b
                for b in self.user_security_questions.values()
                if b.user_id == user_id and (b.is_active or not active_only)
            ]
            return sorted(bindings, key=lambda b: b.created_at)

    def add_user_security_question(
        self, user_id: str, question_id: int, answer_hash: str, *, max_per_user: int
    ) -> UserSecurityQuestion:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if question_id not in self.security_questions:
                raise ConstraintViolation("unknown security question", {"question_id": question_id})
            active = self.list_user_security_questions(user_id)
            if any(b.question_id == question_id for b in active):
                raise ConstraintViolation(
                    "security question already configured", {"question_id": question_id}
                )
            if len(active) >= max_per_user:
                raise ConstraintViolation(
                    "security question limit reached", {"max_questions": max_per_user}
                )
            binding = UserSecurityQuestion(
                id=str(uuid.uuid4()),
                user_id=user_id,
                question_id=question_id,
                answer_hash=answer_hash,
            )
            self.user_security_questions[binding.id] = binding
            self._persist_state()
            return binding

    def update_user_security_answer(
        self, user_id: str, question_id: int, answer_hash: str
    ) -> Optional[UserSecurityQuestion]:
        with self._data_lock:
            for binding in self.list_user_security_questions(user_id):
                if binding.question_id == question_id:
                    binding.answer_hash = answer_hash
                    binding.updated_at = utcnow()
                    self._persist_state()
                    return binding
            return None

    def deactivate_user_security_question(self, user_id: str, question_id: int) -> bool:
        with self._data_lock:
            for binding in self.list_user_security_questions(user_id):
                if binding.question_id == question_id:
                    binding.is_active = False
                    binding.updated_at = utcnow()
                    self._persist_state()
                    return True
            return False

    # -- password reset tokens ---------------------------------------------

    def issue_reset_token(self, token: PasswordResetToken) -> int:
        """Store ``token`` and deactivate the user's other active tokens.

        Returns the number of superseded tokens.
        """
        with self._data_lock:
            superseded = 0
            for existing in self.reset_tokens.values():
                if existing.user_id == token.user_id and existing.is_active:
                    existing.is_active = False
                    superseded += 1
            self.reset_tokens[token.id] = token
            self._persist_state()
            return superseded

    def get_reset_token(self, token_value: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            found = next((t for t in self.reset_tokens.values() if t.token == token_value), None)
            return replace(found) if found else None

    def get_latest_active_reset_token(
        self, user_id: str, *, requires_security_question: Optional[bool] = None
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            candidates = [
                t
                for t in self.reset_tokens.values()
                if t.user_id == user_id
                and t.is_active
                and t.used_at is None
                and (
                    requires_security_question is None
                    or t.requires_security_question == requires_security_question
                )
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda t: t.created_at))

    def list_reset_tokens(self, user_id: str, limit: int = 5) -> List[PasswordResetToken]:
        with self._data_lock:
            tokens = [t for t in self.reset_tokens.values() if t.user_id == user_id]
            tokens.sort(key=lambda t: t.created_at, reverse=True)
            return [replace(t) for t in tokens[:limit]]

    def increment_security_attempts(self, token_id: str, max_attempts: int) -> int:
        """Atomically bump the attempt counter; reaching ``max_attempts`` locks the token."""
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if token is None:
                raise ConstraintViolation("reset token not found", {"token_id": token_id})
            token.security_question_attempts += 1
            if token.security_question_attempts >= max_attempts:
                token.attempts_exhausted = True
                token.is_active = False
            self._persist_state()
            return token.security_question_attempts

    def mark_security_verified(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if token is None or not token.is_usable_for_challenge():
                return False
            token.security_question_verified = True
            self._persist_state()
            return True

    def deactivate_reset_token(self, token_id: str) -> None:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if token is not None and token.is_active:
                token.is_active = False
                self._persist_state()

    def consume_reset_token(self, token_id: str) -> bool:
        """Mark the token used; ``False`` if it was already used or deactivated."""
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if token is None or token.used_at is not None or not token.is_active:
                return False
            token.used_at = utcnow()
            token.is_active = False
            self._persist_state()
            return True

    def delete_stale_reset_tokens(self, now: Optional[datetime] = None) -> int:
        """Drop expired tokens and tokens that can no longer be used."""
        now = now or utcnow()
        with self._data_lock:
            stale = [
                token_id
                for token_id, token in self.reset_tokens.items()
                if token.expires_at <= now or token.used_at is not None or token.attempts_exhausted
            ]
            for token_id in stale:
                del self.reset_tokens[token_id]
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        # reset tokens are short-lived and not snapshotted
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                    for user_id, creds in self.credentials.items()
                ],
                "security_questions": [
                    {
                        "id": q.id,
                        "text": q.text,
                        "category": q.category.value,
                        "is_active": q.is_active,
                        "sort_order": q.sort_order,
                    }
                    for q in self.security_questions.values()
                ],
                "user_security_questions": [
                    {
                        "id": b.id,
                        "user_id": b.user_id,
                        "question_id": b.question_id,
                        "answer_hash": b.answer_hash,
                        "is_active": b.is_active,
                        "created_at": self._serialize_datetime(b.created_at),
                        "updated_at": self._serialize_datetime(b.updated_at),
                    }
                    for b in self.user_security_questions.values()
                ],
            }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.security_questions = {
            q["id"]: SecurityQuestion(
                id=q["id"],
                text=q["text"],
                category=QuestionCategory(q.get("category", "general")),
                is_active=q.get("is_active", True),
                sort_order=q.get("sort_order", 0),
            )
            for q in data.get("security_questions", [])
        }
        self.user_security_questions = {
            b["id"]: UserSecurityQuestion(
                id=b["id"],
                user_id=b["user_id"],
                question_id=b["question_id"],
                answer_hash=b["answer_hash"],
                is_active=b.get("is_active", True),
                created_at=self._deserialize_datetime(b.get("created_at")) or utcnow(),
                updated_at=self._deserialize_datetime(b.get("updated_at")) or utcnow(),
            )
            for b in data.get("user_security_questions", [])
        }
        if not self.security_questions:
            self.default_security_questions()
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role.value,
            "org_unit_id": user.org_unit_id,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "last_login": self._serialize_datetime(user.last_login),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=Role(data.get("role", Role.OUTPUT.value)),
            org_unit_id=data.get("org_unit_id"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_login=self._deserialize_datetime(data.get("last_login")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
        )


__all__ = ["DEFAULT_SECURITY_QUESTIONS", "MemoryStore"]
