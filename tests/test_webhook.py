"""
Tests for the POST /webhook endpoint and the background pipeline.

Tests cover:
- Always 200 with {received, timestamp}, whatever the body
- Group, advertisement and unparsed payloads
- Client messages stored with a suggestion
- Automatic reply gated by RESPONSE_ENABLED and the cooldown
- Media payloads routed to document ingestion
"""

import httpx
import pytest

from despachante.dispatcher import ReplyDispatcher, ZApiClient
from despachante.documents import DocumentIngestor
from despachante.models import Document, InboundMessage
from despachante.storage import SessionLocal
from despachante.suggestions import GenericStrategy, KeywordTemplateStrategy, SuggestionChain

GATEWAY_URL = "https://gateway.test/instances/abc/token/xyz"


def zapi_text(text: str, phone: str = "5521999990000", **extra) -> dict:
    payload = {
        "type": "ReceivedCallback",
        "phone": phone,
        "messageId": "3EB0C431",
        "momment": 1700000000000,
        "fromMe": False,
        "isGroup": False,
        "text": {"message": text},
    }
    payload.update(extra)
    return payload


def stored_messages() -> list:
    with SessionLocal() as session:
        return session.query(InboundMessage).order_by(InboundMessage.id).all()


@pytest.fixture
def gateway(client, mock_http):
    """Route replies to a fake gateway and return its transport."""
    http, transport = mock_http(lambda request: httpx.Response(200, json={"messageId": "OUT1"}))
    client.app.state.dispatcher = ReplyDispatcher(ZApiClient(GATEWAY_URL, "", http), enabled=True)
    client.app.state.suggestions = SuggestionChain([KeywordTemplateStrategy(), GenericStrategy()])
    return transport


class TestWebhookAcknowledgement:

    def test_text_message_acknowledged(self, client):
        response = client.post("/webhook", json=zapi_text("Oi"))

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["timestamp"].endswith("Z")
        assert "x-request-id" in response.headers

    @pytest.mark.parametrize("body", ["not json at all", "", "[1, 2, 3]", '{"foo": "bar"}'])
    def test_garbage_still_200(self, client, body):
        response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert stored_messages() == []

    @pytest.mark.parametrize("momment", ["1e30", "NaN", "-1e30"])
    def test_unusable_timestamp_still_200(self, client, momment):
        body = '{"phone": "5521999990000", "text": {"message": "quero transferir"}, "momment": ' + momment + "}"

        response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 200
        assert response.json()["received"] is True
        message = stored_messages()[0]
        assert message.category == "transferencia"


class TestWebhookPipeline:

    def test_transfer_scenario_stored_with_suggestion(self, client):
        client.post("/webhook", json=zapi_text("Oi, quanto custa transferir meu carro?"))

        messages = stored_messages()
        assert len(messages) == 1
        message = messages[0]
        assert message.phone == "5521999990000"
        assert message.category == "transferencia"
        assert message.is_client is True
        assert message.status == "pendente"
        assert message.suggested_reply
        assert message.suggestion_source == "template"
        assert message.reply_sent is False

    def test_group_message_not_stored(self, client, gateway):
        client.post("/webhook", json=zapi_text("quero transferir", phone="120363000000-group", isGroup=True))

        assert stored_messages() == []
        assert gateway.requests == []

    def test_group_jid_in_data_shape_not_stored(self, client):
        client.post("/webhook", json={"data": {"from": "120363@g.us", "body": "multa"}})

        assert stored_messages() == []

    def test_advertisement_stored_without_suggestion(self, client, gateway):
        client.post("/webhook", json=zapi_text("Super promoção de pneus"))

        message = stored_messages()[0]
        assert message.category == "anuncio"
        assert message.is_client is False
        assert message.suggested_reply is None
        assert gateway.requests == []

    def test_own_message_stored_without_reply(self, client, gateway):
        client.post("/webhook", json=zapi_text("transferência ok", fromMe=True))

        message = stored_messages()[0]
        assert message.suggested_reply is None
        assert gateway.requests == []

    def test_alternate_shape_stored(self, client):
        client.post("/webhook", json={"from": "5521977776666@c.us", "body": "ipva atrasado", "id": "F1"})

        message = stored_messages()[0]
        assert message.phone == "5521977776666"
        assert message.category == "licenciamento"
        assert message.gateway_message_id == "F1"

    def test_pending_after_webhook(self, client):
        client.post("/webhook", json=zapi_text("tenho uma multa"))

        pending = client.get("/api/mensagens-pendentes").json()

        assert pending["total"] == 1
        assert pending["data"][0]["category"] == "multa"


class TestAutoReply:

    def test_reply_sent_when_enabled(self, client, gateway):
        client.post("/webhook", json=zapi_text("quero transferir meu carro"))

        assert len(gateway.requests) == 1
        message = stored_messages()[0]
        assert message.reply_sent is True

    def test_cooldown_blocks_second_reply(self, client, gateway):
        client.post("/webhook", json=zapi_text("quero transferir meu carro"))
        client.post("/webhook", json=zapi_text("e o ipva?"))

        assert len(gateway.requests) == 1
        first, second = stored_messages()
        assert first.reply_sent is True
        assert second.reply_sent is False
        # Both still get a suggestion for the operator
        assert second.suggested_reply

    def test_no_reply_when_disabled(self, client, gateway):
        client.app.state.dispatcher.enabled = False

        client.post("/webhook", json=zapi_text("quero transferir meu carro"))

        assert gateway.requests == []
        assert stored_messages()[0].reply_sent is False

    def test_unknown_sender_gets_no_reply(self, client, gateway):
        client.post("/webhook", json={"message": "quero transferir"})

        assert gateway.requests == []
        assert stored_messages()[0].phone == "unknown"


class TestMediaWebhook:

    def test_document_payload_ingested(self, client, mock_http, tmp_path):
        http, _ = mock_http(lambda request: httpx.Response(200, content=b"%PDF fake"))
        client.app.state.documents = DocumentIngestor(uploader=None, uploads_dir=str(tmp_path), http=http)

        client.post("/webhook", json={
            "phone": "5521999990000",
            "messageId": "DOC1",
            "document": {"documentUrl": "https://media.test/cnh.pdf", "fileName": "cnh.pdf", "mimeType": "application/pdf"},
        })

        with SessionLocal() as session:
            documents = session.query(Document).all()
        assert len(documents) == 1
        assert documents[0].document_type == "cnh"
        assert documents[0].byte_size == len(b"%PDF fake")
        assert documents[0].source_message_id == "DOC1"
        assert stored_messages() == []

        listing = client.get("/api/documentos").json()
        assert listing["total"] == 1


class TestAnalyze:

    def test_analyze_transfer(self, client):
        response = client.post("/analyze", json={"text": "Oi, quanto custa transferir meu carro?"})

        assert response.status_code == 200
        data = response.json()
        assert data["category"] == "transferencia"
        assert data["is_client"] is True
        assert data["quote"]["service_fee"] == 450.00
        assert data["quote"]["total"] == data["quote"]["service_fee"] + data["quote"]["government_fee"]
        assert stored_messages() == []

    def test_analyze_general_inquiry_has_no_quote(self, client):
        data = client.post("/analyze", json={"text": "bom dia"}).json()

        assert data["category"] == "consulta"
        assert data["quote"] is None

    @pytest.mark.parametrize("body", [{}, {"text": ""}, {"text": "  "}])
    def test_analyze_requires_text(self, client, body):
        response = client.post("/analyze", json=body)

        assert response.status_code == 400
        assert response.json()["detail"] == "text is required"

    def test_analyze_without_body_is_400(self, client):
        response = client.post("/analyze")

        assert response.status_code == 400
        assert response.json()["detail"] == "text is required"

    def test_analyze_with_non_json_body_is_400(self, client):
        response = client.post("/analyze", content="oi", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
