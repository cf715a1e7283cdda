"""Tests for CPF check-digit validation."""
import pytest

from nathguard.services.pii_service.validators import digits_only, is_valid_cpf


class TestCpfValidation:

    @pytest.mark.parametrize("value", [
        "123.456.789-09",
        "12345678909",
        "529.982.247-25",
    ])
    def test_valid(self, value):
        assert is_valid_cpf(value) is True

    @pytest.mark.parametrize("value", [
        "123.456.789-00",
        "529.982.247-26",
        "000.000.000-00",
        "999.999.999-99",
        "1234567890",
        "",
    ])
    def test_invalid(self, value):
        assert is_valid_cpf(value) is False

    def test_digits_only(self):
        assert digits_only("(11) 98765-4321") == "11987654321"
