"""
Tests for the message and training store.

Tests cover:
- Approve / correct (including the duplicate and blank correction rules)
- Uniqueness under concurrent double submission
- Pending and trained listings, soft delete
- Training statistics and the few-shot prompt endpoint
"""

import threading

import pytest

from despachante.errors import AlreadyTrained, EmptyCorrection, NotFound
from despachante.models import InboundMessage, TrainingExample
from despachante.storage import (
    MESSAGE_IGNORED,
    MESSAGE_PROCESSED,
    SessionLocal,
    approve_message,
    attach_suggestion,
    correct_message,
    get_training_examples,
    get_training_stats,
    list_pending,
    record_inbound,
)


def seed_message(
    text: str = "quanto custa transferir?",
    category: str = "transferencia",
    is_client: bool = True,
    suggestion: str = "Transferência: R$ 450,00 + taxa DETRAN",
    phone: str = "5521999990000",
) -> int:
    """Insert a message (and its suggestion) through a separate session."""
    with SessionLocal() as session:
        message_id = record_inbound(session, phone, text, category, is_client)
        if suggestion is not None:
            attach_suggestion(session, message_id, suggestion, "template")
    return message_id


def training_rows(message_id: int) -> int:
    with SessionLocal() as session:
        return session.query(TrainingExample).filter(TrainingExample.message_id == message_id).count()


class TestApprove:

    def test_approve_copies_suggestion(self, db):
        message_id = seed_message(suggestion="Sugestão original")

        example = approve_message(db, message_id)

        assert example.decision == "approved"
        assert example.ai_suggestion == "Sugestão original"
        assert example.corrected_response is None
        assert example.customer_message == "quanto custa transferir?"
        assert example.service_category == "transferencia"
        assert db.get(InboundMessage, message_id).status == MESSAGE_PROCESSED

    def test_approve_missing_message(self, db):
        with pytest.raises(NotFound):
            approve_message(db, 999)

    def test_second_approval_fails(self, db):
        message_id = seed_message()
        approve_message(db, message_id)

        with pytest.raises(AlreadyTrained):
            approve_message(db, message_id)

        assert training_rows(message_id) == 1

    def test_correct_after_approve_fails(self, db):
        message_id = seed_message()
        approve_message(db, message_id)

        with pytest.raises(AlreadyTrained):
            correct_message(db, message_id, "outra resposta")

        assert training_rows(message_id) == 1


class TestCorrect:

    def test_correct_stores_operator_text(self, db):
        message_id = seed_message(suggestion="errada")

        example = correct_message(db, message_id, "Transferência sai por R$ 659,78 no total.")

        assert example.decision == "corrected"
        assert example.ai_suggestion == "errada"
        assert example.corrected_response == "Transferência sai por R$ 659,78 no total."

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_blank_correction_rejected_without_insert(self, db, text):
        message_id = seed_message()

        with pytest.raises(EmptyCorrection):
            correct_message(db, message_id, text)

        assert training_rows(message_id) == 0

    def test_blank_correction_checked_before_lookup(self, db):
        with pytest.raises(EmptyCorrection):
            correct_message(db, 999, " ")


class TestConcurrentDecisions:
    """Exactly one training row per message even when two decisions race."""

    def test_concurrent_double_approval(self, db):
        message_id = seed_message()
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def decide(action):
            with SessionLocal() as session:
                barrier.wait()
                try:
                    action(session)
                    result = "ok"
                except AlreadyTrained:
                    result = "already_trained"
            with lock:
                outcomes.append(result)

        threads = [
            threading.Thread(target=decide, args=(lambda s: approve_message(s, message_id),)),
            threading.Thread(target=decide, args=(lambda s: correct_message(s, message_id, "corrigido"),)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["already_trained", "ok"]
        assert training_rows(message_id) == 1


class TestListings:

    def test_pending_excludes_trained_ignored_and_non_clients(self, db):
        trained = seed_message(text="transferir")
        pending = seed_message(text="ipva", category="licenciamento")
        ignored = seed_message(text="multa", category="multa")
        seed_message(text="promoção", category="anuncio", is_client=False)

        approve_message(db, trained)
        with SessionLocal() as session:
            session.get(InboundMessage, ignored).status = MESSAGE_IGNORED
            session.commit()

        rows = list_pending(db)
        assert [row.id for row in rows] == [pending]

    def test_pending_newest_first_and_filtered(self, db):
        first = seed_message(text="transferir 1")
        second = seed_message(text="transferir 2")
        seed_message(text="ipva", category="licenciamento")

        rows = list_pending(db, service_category="transferencia")
        assert [row.id for row in rows] == [second, first]

    def test_training_examples_prefer_corrections(self, db):
        approved = seed_message(text="a")
        corrected = seed_message(text="b")
        approve_message(db, approved)
        correct_message(db, corrected, "resposta corrigida")

        examples = get_training_examples(db, "transferencia", limit=3)
        assert [example.message_id for example in examples] == [corrected, approved]

    def test_training_examples_filtered_by_category(self, db):
        approve_message(db, seed_message(category="multa", text="multa"))

        assert get_training_examples(db, "transferencia") == []


class TestStats:

    def test_empty_stats(self, db):
        stats = get_training_stats(db)

        assert stats["total"] == 0
        assert stats["approval_rate"] == 0
        assert stats["by_category"] == []

    def test_approval_rate_rounded(self, client):
        for _ in range(10):
            assert client.post(f"/api/aprovar/{seed_message()}").status_code == 200
        for _ in range(5):
            message_id = seed_message(category="multa", text="multa")
            response = client.post(f"/api/corrigir/{message_id}", json={"correctedResponse": "corrigido"})
            assert response.status_code == 200

        data = client.get("/api/estatisticas").json()

        assert data["total"] == 15
        assert data["approved"] == 10
        assert data["corrected"] == 5
        assert data["today"] == 15
        assert data["approval_rate"] == 67
        assert data["by_category"][0] == {
            "service_category": "transferencia", "total": 10, "approved": 10, "corrected": 0,
        }

    def test_approval_rate_rounds_half_up(self, db):
        approve_message(db, seed_message())
        for _ in range(7):
            correct_message(db, seed_message(), "corrigido")

        assert get_training_stats(db)["approval_rate"] == 13


class TestTrainingEndpoints:

    def test_approve_endpoint(self, client):
        message_id = seed_message()

        response = client.post(f"/api/aprovar/{message_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["training"]["message_id"] == message_id
        assert data["training"]["decision"] == "approved"

    def test_duplicate_approval_is_400(self, client):
        message_id = seed_message()
        client.post(f"/api/aprovar/{message_id}")

        response = client.post(f"/api/aprovar/{message_id}")

        assert response.status_code == 400
        assert "already" in response.json()["detail"]

    def test_missing_message_is_404(self, client):
        assert client.post("/api/aprovar/12345").status_code == 404
        assert client.post("/api/corrigir/12345", json={"correctedResponse": "x"}).status_code == 404
        assert client.delete("/api/mensagem/12345").status_code == 404

    @pytest.mark.parametrize("body", [{"correctedResponse": ""}, {"correctedResponse": "   "}, {}])
    def test_blank_correction_is_400(self, client, body):
        message_id = seed_message()

        response = client.post(f"/api/corrigir/{message_id}", json=body)

        assert response.status_code == 400
        assert training_rows(message_id) == 0

    def test_correction_without_body_is_400(self, client):
        message_id = seed_message()

        response = client.post(f"/api/corrigir/{message_id}")

        assert response.status_code == 400
        assert training_rows(message_id) == 0

    def test_correction_with_non_json_body_is_400(self, client):
        message_id = seed_message()

        response = client.post(
            f"/api/corrigir/{message_id}", content="corrigido", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert training_rows(message_id) == 0

    def test_trained_listing(self, client):
        message_id = seed_message()
        client.post(f"/api/corrigir/{message_id}", json={"correctedResponse": "nova"})

        data = client.get("/api/mensagens-treinadas").json()

        assert data["total"] == 1
        assert data["data"][0]["corrected_response"] == "nova"

    def test_pending_endpoint_and_soft_delete(self, client):
        keep = seed_message(text="ipva", category="licenciamento")
        drop = seed_message(text="transferir")

        response = client.delete(f"/api/mensagem/{drop}")
        assert response.status_code == 200
        assert response.json()["status"] == "ignorado"

        pending = client.get("/api/mensagens-pendentes").json()
        assert [row["id"] for row in pending["data"]] == [keep]

        # Soft delete keeps the row
        all_messages = client.get("/api/mensagens").json()
        assert all_messages["total"] == 2

    def test_pending_filter_by_service(self, client):
        seed_message(text="ipva", category="licenciamento")
        transfer = seed_message(text="transferir")

        data = client.get("/api/mensagens-pendentes", params={"service": "transferencia"}).json()

        assert [row["id"] for row in data["data"]] == [transfer]

    def test_prompt_template_includes_examples(self, client):
        message_id = seed_message()
        client.post(f"/api/corrigir/{message_id}", json={"correctedResponse": "Resposta do operador"})

        data = client.get("/api/prompt-template", params={"service": "transferencia"}).json()

        assert data["service"] == "transferencia"
        assert data["examples_used"] == 1
        assert "Resposta do operador" in data["prompt"]

    def test_prompt_template_unknown_service(self, client):
        assert client.get("/api/prompt-template", params={"service": "xyz"}).status_code == 400
