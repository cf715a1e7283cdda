"""Tests for TextNormalizer - crisis language must survive obfuscation."""
import pytest

from nathguard.services.safety_service.text_normalizer import TextNormalizer


@pytest.fixture
def normalizer():
    return TextNormalizer()


class TestAccentsAndCase:

    def test_accents_folded(self, normalizer):
        assert normalizer.normalize("Não AGUENTO mais") == "nao aguento mais"
        assert normalizer.normalize("suicídio") == "suicidio"
        assert normalizer.normalize("coração") == "coracao"

    def test_whitespace_collapsed(self, normalizer):
        assert normalizer.normalize("  quero \n\t morrer  ") == "quero morrer"


class TestEvasion:

    def test_leetspeak_inside_words(self, normalizer):
        assert normalizer.normalize("quero m0rrer") == "quero morrer"
        assert normalizer.normalize("$uicídio") == "suicidio"

    def test_standalone_numbers_untouched(self, normalizer):
        """Phone numbers in crisis resources must not be rewritten."""
        assert normalizer.normalize("ligue 188 ou 192") == "ligue 188 ou 192"

    def test_separated_letters(self, normalizer):
        assert normalizer.normalize("quero m.o.r.r.e.r") == "quero morrer"
        assert normalizer.normalize("m-o-r-r-e-r") == "morrer"

    def test_zero_width_characters(self, normalizer):
        assert normalizer.normalize("mor\u200brer") == "morrer"
        assert normalizer.normalize("\ufeffsuic\u00adidio") == "suicidio"

    def test_circled_letters(self, normalizer):
        assert "morrer" in normalizer.normalize("quero ⓜⓞⓡⓡⓔⓡ")

    def test_fullwidth_letters(self, normalizer):
        assert normalizer.normalize("ｍｏｒｒｅｒ") == "morrer"

    def test_hyphenated_words_kept(self, normalizer):
        assert normalizer.normalize("pós-parto") == "pos-parto"


class TestEdgeCases:

    @pytest.mark.parametrize("value", ["", None, 42])
    def test_empty_or_non_string(self, normalizer, value):
        assert normalizer.normalize(value) == ""

    def test_instances_share_no_state(self):
        first, second = TextNormalizer(), TextNormalizer()

        assert first.normalize("Sem Saída") == second.normalize("Sem Saída") == "sem saida"
