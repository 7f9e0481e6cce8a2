"""
Tests for the keyword classifier and document type detection.

Tests cover:
- Group and broadcast short-circuits
- Advertisement keywords
- Service rule order (first match wins)
- General inquiry fallback
- Document type heuristics
"""

import pytest

from despachante.classifier import (
    GENERIC_REPLY,
    SERVICE_RULES,
    ServiceCategory,
    classify,
    detect_document_type,
    template_reply,
)


class TestClassifyShortCircuits:
    """Group and broadcast flags win over any text."""

    @pytest.mark.parametrize("text", ["quero transferir meu carro", "", "multa do detran"])
    def test_group_chat_is_group_regardless_of_text(self, text):
        result = classify(text, is_group_chat=True)

        assert result.category == ServiceCategory.GROUP
        assert result.is_client is False

    def test_broadcast_is_advertisement(self):
        result = classify("transferência com desconto", is_broadcast=True)

        assert result.category == ServiceCategory.ADVERTISEMENT
        assert result.is_client is False

    def test_group_flag_checked_before_broadcast(self):
        assert classify("oi", is_group_chat=True, is_broadcast=True).category == ServiceCategory.GROUP

    @pytest.mark.parametrize("text", [
        "Super PROMOÇÃO de pneus",
        "desconto imperdível",
        "Clique aqui para ganhar",
        "veja o link na bio",
    ])
    def test_advertisement_keywords(self, text):
        result = classify(text)

        assert result.category == ServiceCategory.ADVERTISEMENT
        assert result.is_client is False


class TestClassifyServiceRules:
    """Lower-cased substring matching in the fixed rule order."""

    def test_transfer_scenario(self):
        result = classify("Oi, quanto custa transferir meu carro?")

        assert result.category == ServiceCategory.TRANSFER
        assert result.is_client is True

    @pytest.mark.parametrize("text,expected", [
        ("Vendi minha moto ontem", ServiceCategory.TRANSFER),
        ("quanto está o IPVA 2025?", ServiceCategory.LICENSING),
        ("Recebi uma MULTA", ServiceCategory.FINE),
        ("perdi o CRLV", ServiceCategory.CRLV),
        ("preciso da segunda via", ServiceCategory.CRLV),
        ("baixa de gravame", ServiceCategory.LIEN),
        ("preciso de um laudo", ServiceCategory.INSPECTION),
    ])
    def test_each_rule(self, text, expected):
        assert classify(text).category == expected

    @pytest.mark.parametrize("category,keywords", SERVICE_RULES)
    def test_every_keyword_maps_to_its_category_when_alone(self, category, keywords):
        for keyword in keywords:
            assert classify(f"olá, {keyword}").category == category

    def test_first_matching_rule_wins(self):
        # transfer is checked before licensing and fines
        assert classify("transferir e pagar a multa do detran").category == ServiceCategory.TRANSFER
        # licensing is checked before fines
        assert classify("ipva e multa").category == ServiceCategory.LICENSING

    def test_substring_not_token_match(self):
        # "compra" inside "comprador"
        assert classify("sou o comprador").category == ServiceCategory.TRANSFER

    @pytest.mark.parametrize("text", ["", "bom dia", "   ", None])
    def test_no_match_is_general_inquiry(self, text):
        result = classify(text)

        assert result.category == ServiceCategory.GENERAL_INQUIRY
        assert result.is_client is True


class TestTemplates:

    def test_every_client_category_has_a_template(self):
        for category, _ in SERVICE_RULES:
            assert template_reply(category) != GENERIC_REPLY

    def test_non_client_categories_use_generic_reply(self):
        assert template_reply(ServiceCategory.GROUP) == GENERIC_REPLY
        assert template_reply(ServiceCategory.ADVERTISEMENT) == GENERIC_REPLY


class TestDetectDocumentType:
    """Document heuristics follow the same first-match style."""

    @pytest.mark.parametrize("file_name,mime_type,expected", [
        ("CRLV_2024.pdf", "application/pdf", "crlv"),
        ("foto.jpg", "image/jpeg", "crlv"),
        ("cnh_frente.pdf", "application/pdf", "cnh"),
        ("rg.pdf", "application/pdf", "rg"),
        ("cpf.pdf", "application/pdf", "cpf"),
        ("comprovante_luz.pdf", "application/pdf", "comprovante"),
        ("residencia.docx", "application/msword", "comprovante"),
        ("contrato.docx", "application/msword", "contrato"),
        ("arquivo.pdf", "application/pdf", "pdf"),
        ("planilha.xlsx", "application/vnd.ms-excel", "documentos"),
    ])
    def test_detection(self, file_name, mime_type, expected):
        assert detect_document_type(file_name, mime_type) == expected

    def test_missing_name_and_type(self):
        assert detect_document_type(None, None) == "documentos"
