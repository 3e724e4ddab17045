"""
Unit tests for smart code validation.

Tests cover:
- Grammar acceptance and rejection
- Strict versus relaxed prefix handling
- Domain registry
- Classification
"""

import pytest

from dbaas.hera_server.schema.smart_code import (
    SmartCode,
    SmartCodeRegistry,
    classify,
    validate,
)


class TestValidate:
    """Tests for validate()."""

    @pytest.mark.parametrize(
        "code",
        [
            "HERA.SALON.POS.SALE.TXN.RETAIL.v1",
            "HERA.CRM.CUSTOMER.ENTITY.PROFILE.v1",
            "HERA.FIN.GL.JOURNAL.v12",
            "HERA.UNIVERSAL.REL.MEMBER_OF.v1",
            "HERA.O2C.INVOICE.v3",
        ],
    )
    def test_valid_codes(self, code):
        """Well-formed codes validate."""
        result = validate(code)
        assert result.valid
        assert result.reason is None

    @pytest.mark.parametrize(
        "code",
        [
            "",
            "   ",
            "HERA.CRM.CUSTOMER",
            "HERA.CRM.CUSTOMER.V1",
            "HERA.CRM.CUSTOMER.v0",
            "HERA.CRM.v1",
            "HERA.crm.CUSTOMER.v1",
            "HERA.CRM..CUSTOMER.v1",
            "HERA.CRM.CUST-OMER.v1",
            "HERA.1CRM.CUSTOMER.v1",
        ],
    )
    def test_invalid_codes(self, code):
        """Malformed codes are rejected with a reason."""
        result = validate(code)
        assert not result.valid
        assert result.reason

    def test_non_string_rejected(self):
        """Non-string input never raises."""
        assert not validate(None)
        assert not validate(42)

    def test_strict_requires_hera_prefix(self):
        """Strict mode enforces the HERA prefix, relaxed mode does not."""
        code = "ACME.CRM.CUSTOMER.v1"
        assert not validate(code, strict=True)
        assert validate(code, strict=False)

    def test_registry_rejects_unknown_domain(self):
        """A registry limits accepted domains."""
        registry = SmartCodeRegistry({"CRM"})
        assert validate("HERA.CRM.CUSTOMER.v1", registry=registry)

        result = validate("HERA.JEWELRY.RING.v1", registry=registry)
        assert not result.valid
        assert "JEWELRY" in result.reason

    def test_registry_register(self):
        """Registered domains become valid."""
        registry = SmartCodeRegistry(set())
        registry.register("JEWELRY")
        assert registry.is_known("JEWELRY")
        assert validate("HERA.JEWELRY.ITEM.RING.v1", registry=registry)

    def test_registry_register_invalid_domain(self):
        """Domains must follow the segment grammar."""
        with pytest.raises(ValueError):
            SmartCodeRegistry().register("jewelry")


class TestSmartCode:
    """Tests for SmartCode parsing."""

    def test_parse_parts(self):
        """Parsing splits prefix, domain, family and version."""
        code = SmartCode.parse("HERA.SALON.POS.SALE.TXN.RETAIL.v2")
        assert code.prefix == "HERA"
        assert code.domain == "SALON"
        assert code.family == ("POS", "SALE", "TXN", "RETAIL")
        assert code.version == 2
        assert str(code) == "HERA.SALON.POS.SALE.TXN.RETAIL.v2"

    def test_parse_invalid_raises(self):
        """Invalid codes raise ValueError."""
        with pytest.raises(ValueError):
            SmartCode.parse("not a code")

    def test_is_gl(self):
        """Codes with a GL segment are GL postings."""
        assert SmartCode.parse("HERA.FIN.GL.JOURNAL.v1").is_gl
        assert not SmartCode.parse("HERA.SALES.ORDER.v1").is_gl


class TestClassify:
    """Tests for classify()."""

    def test_classify(self):
        """Classification exposes the dispatch keys."""
        cls = classify("HERA.FIN.GL.JOURNAL.POST.v4")
        assert cls.domain == "FIN"
        assert cls.family == ("GL", "JOURNAL", "POST")
        assert cls.version == 4
        assert cls.is_gl is True

    def test_classify_invalid(self):
        with pytest.raises(ValueError):
            classify("HERA.FIN")
