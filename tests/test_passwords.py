"""Tests for core/passwords.py -- generation and strength classification."""

import pytest

from core.passwords import DIGITS, LOWER, SYMBOLS, UPPER, PasswordStrength, analyze_strength, generate_password


class TestGeneratePassword:
    @pytest.mark.parametrize("length", [4, 10, 32])
    def test_length_and_every_class(self, length: int) -> None:
        password = generate_password(length)
        assert len(password) == length
        for charset in (LOWER, UPPER, DIGITS, SYMBOLS):
            assert any(ch in charset for ch in password)

    def test_default_length(self) -> None:
        assert len(generate_password()) == 10

    def test_too_short(self) -> None:
        with pytest.raises(ValueError):
            generate_password(3)

    def test_not_repeated(self) -> None:
        assert len({generate_password(16) for _ in range(20)}) == 20


class TestAnalyzeStrength:
    @pytest.mark.parametrize(
        "password, expected",
        [
            ("abc", PasswordStrength.weak),
            ("Password", PasswordStrength.weak),
            ("abcdefgh", PasswordStrength.weak),
            ("abcdefg1", PasswordStrength.medium),
            ("Abcdefg1", PasswordStrength.medium),
            ("Abcdefg1!", PasswordStrength.strong),
            ("abcdefghijk1", PasswordStrength.medium),
            ("Abcdefghijk1", PasswordStrength.strong),
        ],
    )
    def test_classification(self, password: str, expected: PasswordStrength) -> None:
        assert analyze_strength(password) is expected
