import pytest

from credvault.generator import (
    DIGITS,
    LOOKALIKES,
    LOWERCASE,
    SYMBOLS,
    UPPERCASE,
    generate_password,
    password_strength,
)


class TestGeneratePassword:
    def test_length(self):
        assert len(generate_password(32)) == 32
        assert len(generate_password(1)) == 1

    def test_character_classes(self):
        pw = generate_password(200, uppercase=False, symbols=False)
        assert set(pw) <= set(LOWERCASE + DIGITS)

    def test_only_symbols(self):
        pw = generate_password(50, uppercase=False, lowercase=False, digits=False)
        assert set(pw) <= set(SYMBOLS)

    def test_exclude_lookalikes(self):
        pw = generate_password(500, exclude_lookalikes=True)
        assert not set(pw) & set(LOOKALIKES)

    def test_random(self):
        assert generate_password() != generate_password()

    def test_no_classes_selected(self):
        with pytest.raises(ValueError):
            generate_password(uppercase=False, lowercase=False, digits=False, symbols=False)

    def test_bad_length(self):
        with pytest.raises(ValueError):
            generate_password(0)

    def test_lookalikes_only_class_can_become_empty(self):
        pw = generate_password(10, uppercase=True, lowercase=False, digits=False, symbols=False, exclude_lookalikes=True)
        assert set(pw) <= set(UPPERCASE) - set(LOOKALIKES)


class TestStrength:
    @pytest.mark.parametrize(
        "password,score,label",
        [
            ("", 0, "Weak"),
            ("abc", 1, "Weak"),
            ("abcdefgh", 2, "Weak"),
            ("abcdefgh1", 3, "Fair"),
            ("Abcdefgh1", 4, "Fair"),
            ("Abcdefgh1!", 5, "Good"),
            ("Abcdefgh1!xy", 6, "Good"),
            ("Abcdefgh1!xyzwvu", 7, "Strong"),
        ],
    )
    def test_scores(self, password, score, label):
        result = password_strength(password)
        assert (result.score, result.label) == (score, label)
