import pytest

from kodi.plugins.pms.utils.phone import normalize_phone, phone_variants, to_international


class TestNormalizePhone:
    @pytest.mark.parametrize("raw", [
        "0712345678",
        "254712345678",
        "+254712345678",
        "+254 712 345 678",
        "(0712) 345-678",
        "712345678",
    ])
    def test_kenyan_forms_collapse_to_local(self, raw):
        assert normalize_phone(raw) == "0712345678"

    def test_safaricom_01_prefix(self):
        assert normalize_phone("110123456") == "0110123456"
        assert normalize_phone("254110123456") == "0110123456"

    def test_blank_is_none(self):
        assert normalize_phone(None) is None
        assert normalize_phone("  ") is None

    def test_non_phone_reference_is_left_alone(self):
        assert normalize_phone("A1") == "A1"

    def test_to_international(self):
        assert to_international("0712345678") == "254712345678"
        assert to_international("+254712345678") == "254712345678"


class TestPhoneVariants:
    def test_all_spellings(self):
        assert phone_variants("0712345678") == {
            "0712345678", "712345678", "254712345678", "+254712345678",
        }

    def test_variants_agree_across_input_forms(self):
        assert phone_variants("+254712345678") == phone_variants("712345678")

    def test_unit_code_has_single_variant(self):
        assert phone_variants("A1") == {"A1"}

    def test_empty(self):
        assert phone_variants(None) == set()
