"""Tests for PIIRedactor - personal data never reaches storage or logs."""
import pytest

from nathguard.shared.models import PIIType
from nathguard.services.pii_service import (
    PIIRedactor,
    PIIRedactorConfig,
    REPLACEMENTS,
    mask_partial,
)


@pytest.fixture
def redactor():
    return PIIRedactor()


SAMPLES = [
    "Meu telefone é (11) 98765-4321, me chama",
    "Meu CPF é 123.456.789-09",
    "escreve para maria.silva@gmail.com ou +55 21 99876-5432",
    "nasci em 15/03/1990 e meu RG é 12.345.678-9",
    "cartão 4111 1111 1111 1111 e cartão sus 898 0012 3456 7890",
    "moro na Rua das Flores, 123 - CEP 01310-100",
    "Sou a Ana Beatriz Souza e moro em São Paulo",
    "Ana Maria Rua Flores 5",
    "Bom Dia Maria Silva",
    "bom dia, hoje o bebê dormiu bem",
    "",
]


class TestDetection:
    """Category detection."""

    def test_phone_scenario(self, redactor):
        result = redactor.detect("Meu telefone é (11) 98765-4321, me chama")

        assert result.has_pii is True
        assert result.types == frozenset({PIIType.PHONE})
        assert result.sanitized_text == "Meu telefone é [telefone removido], me chama"

    def test_valid_cpf_detected(self, redactor):
        result = redactor.detect("Meu CPF é 123.456.789-09")

        assert PIIType.NATIONAL_ID in result.types
        assert "[cpf removido]" in result.sanitized_text
        assert "123.456.789-09" not in result.sanitized_text

    def test_invalid_cpf_checksum_not_flagged_as_national_id(self, redactor):
        result = redactor.detect("Meu CPF é 123.456.789-00")

        assert PIIType.NATIONAL_ID not in result.types

    def test_repeated_digit_cpf_rejected(self, redactor):
        result = redactor.detect("cpf 111.111.111-11")

        assert PIIType.NATIONAL_ID not in result.types

    def test_email(self, redactor):
        result = redactor.detect("escreve para maria.silva@gmail.com")

        assert result.types == frozenset({PIIType.EMAIL})
        assert result.sanitized_text == "escreve para [e-mail removido]"

    def test_birth_date_and_rg(self, redactor):
        result = redactor.detect("nasci em 15/03/1990 e meu RG é 12.345.678-9")

        assert {PIIType.BIRTH_DATE, PIIType.GOV_ID} <= result.types

    def test_credit_card_not_split_into_phone(self, redactor):
        result = redactor.detect("cartão 4111 1111 1111 1111")

        assert result.types == frozenset({PIIType.CREDIT_CARD})

    def test_address_and_postal_code(self, redactor):
        result = redactor.detect("moro na Rua das Flores, 123 - CEP 01310-100")

        assert result.types == frozenset({PIIType.ADDRESS})
        assert len(result.positions) == 2

    def test_full_name_with_false_positive_filter(self, redactor):
        result = redactor.detect("Sou a Ana Beatriz Souza e moro em São Paulo")

        names = [p.raw_value for p in result.positions if p.type is PIIType.FULL_NAME]
        assert names == ["Ana Beatriz Souza"]
        assert "São Paulo" in result.sanitized_text

    def test_positions_refer_to_original_text(self, redactor):
        text = "ligue 11 98765-4321 ou mande para a@b.com"
        result = redactor.detect(text)

        for pos in result.positions:
            assert text[pos.start:pos.end] == pos.raw_value
        assert [p.start for p in result.positions] == sorted(p.start for p in result.positions)

    def test_no_pii(self, redactor):
        result = redactor.detect("bom dia, hoje o bebê dormiu bem")

        assert result.has_pii is False
        assert result.positions == ()
        assert result.sanitized_text == "bom dia, hoje o bebê dormiu bem"

    @pytest.mark.parametrize("value", [None, 42, ""])
    def test_never_raises_on_odd_input(self, redactor, value):
        result = redactor.detect(value)

        assert result.has_pii is False

    def test_to_dict_omits_raw_values(self, redactor):
        data = redactor.detect("Meu CPF é 123.456.789-09").to_dict()

        assert "raw_value" not in data["positions"][0]
        assert "123.456.789-09" not in str(data)


class TestSanitizeProperties:
    """Idempotency and token safety."""

    def test_name_next_to_address_is_trimmed(self, redactor):
        assert redactor.sanitize("Ana Maria Rua Flores 5") == "[nome removido] [endereço removido]"

    def test_allow_listed_phrase_does_not_hide_name(self, redactor):
        assert redactor.sanitize("Bom Dia Maria Silva") == "Bom Dia [nome removido]"

    @pytest.mark.parametrize("text", SAMPLES)
    def test_sanitize_is_idempotent(self, redactor, text):
        once = redactor.sanitize(text)

        assert redactor.sanitize(once) == once

    @pytest.mark.parametrize("text", SAMPLES)
    def test_sanitized_text_is_safe_to_store(self, redactor, text):
        assert redactor.is_safe_to_store(redactor.sanitize(text))

    def test_tokens_never_match_rules(self, redactor):
        for token in REPLACEMENTS.values():
            assert redactor.detect(token).has_pii is False

    def test_disabled_types_are_ignored(self):
        only_email = PIIRedactor(PIIRedactorConfig(enabled_types=frozenset({PIIType.EMAIL})))

        result = only_email.detect("a@b.com (11) 98765-4321")

        assert result.types == frozenset({PIIType.EMAIL})


class TestStructuredRedaction:

    def test_nested_structures(self, redactor):
        payload = {
            "note": "meu email é a@b.com",
            "count": 3,
            "flags": ["ok", "tel 11 98765-4321"],
            "inner": {"who": "Ana Beatriz Souza", "ok": True, "none": None},
            "pair": ("x", "a@b.com"),
        }

        redacted = redactor.redact_structured(payload)

        assert redacted["note"] == "meu email é [e-mail removido]"
        assert redacted["count"] == 3
        assert redacted["flags"] == ["ok", "tel [telefone removido]"]
        assert redacted["inner"] == {"who": "[nome removido]", "ok": True, "none": None}
        assert redacted["pair"] == ["x", "[e-mail removido]"]

    def test_keys_are_redacted(self, redactor):
        redacted = redactor.redact_structured({"maria@example.com": "x", 52998224725: "y"})

        assert redacted == {"[e-mail removido]": "x", "[cpf removido]": "y"}

    def test_numbers_carrying_pii_are_replaced(self, redactor):
        redacted = redactor.redact_structured({"cpf": 52998224725, "phone": 11987654321, "n": 42})

        assert redacted == {"cpf": "[cpf removido]", "phone": "[telefone removido]", "n": 42}


class TestHelpers:

    def test_contains_phone_requires_area_code(self, redactor):
        assert redactor.contains_phone("(11) 98765-4321") is True
        assert redactor.contains_phone("98765-4321") is False

    def test_contains_email_and_address(self, redactor):
        assert redactor.contains_email("x a@b.com") is True
        assert redactor.contains_address("Avenida Paulista, 1000") is True

    def test_detect_names(self, redactor):
        assert redactor.detect_names("Nossa Senhora, a Maria Clara chorou") == ["Maria Clara"]
        assert redactor.detect_names("Bom Dia Maria Silva") == ["Maria Silva"]

    def test_extract_metadata(self, redactor):
        meta = redactor.extract_metadata("me liga 11 98765-4321")

        assert meta == {
            "length": 21,
            "word_count": 4,
            "has_pii": True,
            "pii_types": ["phone"],
        }


class TestMaskPartial:

    @pytest.mark.parametrize("value,pii_type,expected", [
        ("maria@example.com", PIIType.EMAIL, "ma***@example.com"),
        ("sem-arroba", PIIType.EMAIL, "***@***.com"),
        ("(11) 98765-4321", PIIType.PHONE, "(11) *****-4321"),
        ("(11) 8765-4321", PIIType.PHONE, "(11) ****-4321"),
        ("123.456.789-09", PIIType.NATIONAL_ID, "***.456.***-09"),
        ("12.345.678-9", PIIType.GOV_ID, "12**********"),
    ])
    def test_masks(self, value, pii_type, expected):
        assert mask_partial(value, pii_type) == expected
