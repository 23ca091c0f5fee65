"""
Unit tests for the system clock and secure code generator.
"""

from datetime import UTC

import pytest

from src.domain.codes import SecureCodeGenerator, SystemClock


class TestSecureCodeGenerator:
    def test_numeric_code_length_and_digits(self) -> None:
        generator = SecureCodeGenerator()
        for length in (1, 4, 6, 8):
            code = generator.numeric_code(length)
            assert len(code) == length
            assert code.isdigit()

    def test_numeric_code_is_string_preserving_leading_zeros(self) -> None:
        generator = SecureCodeGenerator()
        codes = [generator.numeric_code(2) for _ in range(500)]
        assert all(isinstance(code, str) and len(code) == 2 for code in codes)
        # 500 draws from 100 values: a leading zero shows up with overwhelming probability
        assert any(code.startswith("0") for code in codes)

    def test_rejects_non_positive_length(self) -> None:
        with pytest.raises(ValueError):
            SecureCodeGenerator().numeric_code(0)

    def test_tokens_are_url_safe_and_unique(self) -> None:
        generator = SecureCodeGenerator()
        tokens = {generator.token() for _ in range(100)}
        assert len(tokens) == 100
        for token in tokens:
            assert len(token) >= 43
            assert set(token) <= set(
                "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
            )


class TestSystemClock:
    def test_now_is_timezone_aware_utc(self) -> None:
        assert SystemClock().now().tzinfo is UTC
