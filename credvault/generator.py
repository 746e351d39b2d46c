from dataclasses import dataclass
import re, secrets, string

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"
LOOKALIKES = "0O1lI"


@dataclass(frozen=True)
class Strength:
    score: int
    label: str


def generate_password(
    length: int = 16,
    uppercase: bool = True,
    lowercase: bool = True,
    digits: bool = True,
    symbols: bool = True,
    exclude_lookalikes: bool = False,
) -> str:
    """Random password drawn uniformly from the selected character classes."""
    if length < 1:
        raise ValueError("length must be at least 1")
    charset = ""
    if uppercase:
        charset += UPPERCASE
    if lowercase:
        charset += LOWERCASE
    if digits:
        charset += DIGITS
    if symbols:
        charset += SYMBOLS
    if exclude_lookalikes:
        charset = "".join(c for c in charset if c not in LOOKALIKES)
    if not charset:
        raise ValueError("At least one character type must be selected")
    return "".join(secrets.choice(charset) for _ in range(length))


def password_strength(password: str) -> Strength:
    """Score 0-7: one point per length threshold (8/12/16) and per character class."""
    score = sum(len(password) >= n for n in (8, 12, 16))
    for pattern in (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^a-zA-Z0-9]"):
        if re.search(pattern, password):
            score += 1
    if score <= 2:
        label = "Weak"
    elif score <= 4:
        label = "Fair"
    elif score <= 6:
        label = "Good"
    else:
        label = "Strong"
    return Strength(score=score, label=label)
