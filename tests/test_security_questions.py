"""Security question catalog, per-user bindings and answer checks."""

import pytest
from argon2 import PasswordHasher, Type

from gamcauth.service.errors import NotFoundError, ValidationError
from gamcauth.service.security_questions import (
    SecurityQuestionService,
    normalize_answer,
    validate_answer,
)


@pytest.fixture
def fast_hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def service(store, settings, fast_hasher):
    return SecurityQuestionService(store, settings, hasher=fast_hasher)


@pytest.fixture
def user(store):
    return store.create_user("maria.quispe@gamc.gov.bo", "María", "Quispe")


class TestAnswerNormalization:
    def test_case_and_whitespace_are_ignored(self):
        assert normalize_answer("  Río   SECO ") == normalize_answer("río seco")

    def test_compatibility_forms_fold(self):
        assert normalize_answer("ｆｉｄｏ") == "fido"

    @pytest.mark.parametrize("answer", ["a", " ", "aaaa", "x" * 101])
    def test_weak_answers_rejected(self, answer):
        with pytest.raises(ValidationError):
            validate_answer(answer)


class TestCatalog:
    def test_default_catalog_is_seeded(self, service):
        catalog = service.catalog()
        assert len(catalog) == 10
        assert [q.id for q in catalog] == list(range(1, 11))
        assert {q.category.value for q in catalog} == {
            "personal",
            "education",
            "professional",
            "preferences",
            "general",
        }


class TestBindings:
    def test_setup_stores_hashes_not_answers(self, service, store, user):
        service.setup(user.id, [(1, "Firulais"), (4, "Escuela Bolívar")])

        bindings = store.list_user_security_questions(user.id)
        assert [b.question_id for b in bindings] == [1, 4]
        assert all("Firulais" not in b.answer_hash for b in bindings)
        assert service.verify_answer(user.id, 1, "  firulais ")
        assert not service.verify_answer(user.id, 1, "Bobby")
        assert not service.verify_answer(user.id, 2, "Firulais")

    def test_challenge_question_is_oldest_binding(self, service, user):
        assert service.challenge_question(user.id) is None
        service.setup(user.id, [(3, "Pedro")])
        service.setup(user.id, [(8, "Silpancho")])

        assert service.challenge_question(user.id).id == 3

    def test_setup_rejects_duplicates_and_unknown_questions(self, service, user):
        with pytest.raises(ValidationError):
            service.setup(user.id, [])
        with pytest.raises(ValidationError):
            service.setup(user.id, [(1, "uno"), (1, "dos")])
        with pytest.raises(ValidationError):
            service.setup(user.id, [(99, "nada")])

        service.setup(user.id, [(1, "uno")])
        with pytest.raises(ValidationError):
            service.setup(user.id, [(1, "otra")])

    def test_setup_enforces_per_user_limit(self, service, user):
        service.setup(user.id, [(1, "uno"), (2, "dos"), (3, "tres")])
        with pytest.raises(ValidationError) as excinfo:
            service.setup(user.id, [(4, "cuatro")])
        assert excinfo.value.detail["max_questions"] == 3

    def test_update_changes_answer(self, service, user):
        service.setup(user.id, [(5, "Profe Juan")])
        service.update(user.id, 5, "Profe Ana")

        assert service.verify_answer(user.id, 5, "profe ana")
        assert not service.verify_answer(user.id, 5, "Profe Juan")

    def test_update_or_remove_unconfigured_question(self, service, user):
        with pytest.raises(NotFoundError):
            service.update(user.id, 2, "algo")
        with pytest.raises(NotFoundError):
            service.remove(user.id, 2)

    def test_remove_frees_the_slot(self, service, user):
        service.setup(user.id, [(1, "uno"), (2, "dos"), (3, "tres")])
        service.remove(user.id, 2)

        status = service.status(user.id)
        assert status["questionsCount"] == 2
        assert not service.verify_answer(user.id, 2, "dos")
        service.setup(user.id, [(6, "seis")])

    def test_status_reports_configured_and_available(self, service, user):
        empty = service.status(user.id)
        assert empty["hasSecurityQuestions"] is False
        assert len(empty["availableQuestions"]) == 10

        service.setup(user.id, [(7, "Don Carlos")])
        status = service.status(user.id)
        assert status["hasSecurityQuestions"] is True
        assert status["maxQuestions"] == 3
        assert [q["questionId"] for q in status["questions"]] == [7]
        assert 7 not in [q["id"] for q in status["availableQuestions"]]
        assert "answer" not in str(status["questions"]).lower()
