"""
Synthetic value generation and format checkers.

FakeDataGenerator wraps a Faker instance. Given the same seed, the same
calls produce the same values; a seed of None draws from system randomness.
Every generated value is checked by the same validators callers can use
(is_valid_email, is_valid_phone) before it is returned.
"""

from __future__ import annotations

import hashlib
import re
from decimal import Decimal
from typing import Any

from faker import Faker

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-().]{5,20}[0-9]$")

TEXT_EMAIL = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}")
TEXT_ISO_DATE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
TEXT_PHONE = re.compile(r"\+?\d[\d \-.]{6,}\d")
TEXT_DATE = re.compile(r"\b\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}\b")
TEXT_TIME = re.compile(r"\b\d{1,2}:\d{2}(?::\d{2})?(?:\s?[AaPp][Mm])?\b")

PLACEHOLDER_EMAIL = "test@example.com"
PLACEHOLDER_PHONE = "0555123456"
PLACEHOLDER_DATE = "01/01/2024"
PLACEHOLDER_TIME = "10:00 AM"
PLACEHOLDER_USER_AGENT = "Mozilla/5.0 (Test Browser) TestAgent/1.0"


def is_valid_email(value: Any) -> bool:
    """True if ``value`` is a syntactically valid email address."""
    return isinstance(value, str) and len(value) <= 254 and bool(EMAIL_PATTERN.match(value))


def is_valid_phone(value: Any) -> bool:
    """True if ``value`` looks like a phone number with 7 to 15 digits."""
    if not isinstance(value, str) or not PHONE_PATTERN.match(value):
        return False
    digits = sum(1 for char in value if char.isdigit())
    return 7 <= digits <= 15


def anonymize_text(text: str) -> str:
    """
    Scrub personal details embedded in free text.

    Emails, phone numbers, dates and times are replaced by fixed
    placeholders; the rest of the text is kept.

    Example:
        >>> anonymize_text("Call me at 0661234567 or mail ali@corp.dz")
        'Call me at 0555123456 or mail test@example.com'
    """
    text = TEXT_EMAIL.sub(PLACEHOLDER_EMAIL, text)
    text = TEXT_ISO_DATE.sub(PLACEHOLDER_DATE, text)
    text = TEXT_PHONE.sub(_phone_placeholder, text)
    text = TEXT_DATE.sub(PLACEHOLDER_DATE, text)
    return TEXT_TIME.sub(PLACEHOLDER_TIME, text)


def _phone_placeholder(match: re.Match[str]) -> str:
    digits = sum(1 for char in match.group(0) if char.isdigit())
    return PLACEHOLDER_PHONE if digits >= 9 else match.group(0)


def stable_token(value: Any, length: int = 8) -> str:
    """Short hex digest of a value; equal inputs give equal tokens."""
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()[:length]


class FakeDataGenerator:
    """
    Shape-valid synthetic values backed by Faker.

    Args:
        seed: Seed for reproducible output; None for system randomness.
        locale: Faker locale.

    Example:
        >>> generator = FakeDataGenerator(seed=42)
        >>> is_valid_email(generator.email())
        True
    """

    def __init__(self, seed: int | str | None = None, locale: str = "en_US") -> None:
        self.seed = seed
        self._faker = Faker(locale)
        if seed is not None:
            self._faker.seed_instance(seed)

    def reseed(self, *parts: Any) -> None:
        """
        Derive a fresh deterministic stream from the base seed and ``parts``.

        Used per table/column so one column's output does not depend on how
        many values were generated for another. No-op without a seed.
        """
        if self.seed is not None:
            self._faker.seed_instance(":".join(str(p) for p in (self.seed, *parts)))

    def email(self, sequence: int | None = None) -> str:
        user = re.sub(r"[^A-Za-z0-9._]", "", self._faker.user_name()) or "user"
        if sequence is not None:
            user = f"{user}.{sequence}"
        return f"{user}@{self._faker.safe_domain_name()}"

    def phone(self) -> str:
        return self._faker.numerify("+1-%##-###-####")

    def name(self) -> str:
        return self._faker.name()

    def first_name(self) -> str:
        return self._faker.first_name()

    def last_name(self) -> str:
        return self._faker.last_name()

    def address(self) -> str:
        return self._faker.address().replace("\n", ", ")

    def company(self) -> str:
        return self._faker.company()

    def text(self, max_words: int = 12) -> str:
        return self._faker.sentence(nb_words=max_words)

    def factor(self) -> float:
        """Random scaling factor between 0.8 and 1.2."""
        return self._faker.pyfloat(min_value=0.8, max_value=1.2, right_digits=4)

    def amount(self, original: Any = None, factor: float | None = None) -> Any:
        """
        A plausible amount of the same type as ``original``.

        Numbers are scaled by ``factor`` (random when omitted) so totals stay
        in the same order of magnitude. Passing one factor for several
        amounts of a row keeps their proportions.
        """
        if factor is None:
            factor = self.factor()
        if isinstance(original, bool):
            return original
        if isinstance(original, int):
            return round(original * factor)
        if isinstance(original, Decimal):
            return (original * Decimal(str(factor))).quantize(Decimal("0.01"))
        if isinstance(original, float):
            return round(original * factor, 2)
        return round(self._faker.pyfloat(min_value=1, max_value=10_000, right_digits=2), 2)

    def integer(self, low: int, high: int) -> int:
        """Random integer in ``[low, high]``."""
        return self._faker.random_int(min=low, max=high)

    def pick(self, options: tuple[Any, ...]) -> Any:
        return self._faker.random_element(options)

    def ip_address(self) -> str:
        return self._faker.ipv4_private()

    def session_id(self, original: Any = None) -> str:
        if original is not None:
            return f"test_session_{stable_token(original)}"
        return f"test_session_{self._faker.hexify('^^^^^^^^')}"
