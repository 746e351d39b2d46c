import os
from datetime import datetime, timezone
from urllib.parse import parse_qs, unquote, urlparse

import pytest

from credvault import totp
from credvault.errors import InvalidSecretError

# RFC 6238 Appendix B, SHA-1 seed "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
RFC_VECTORS = [
    (59, "94287082"),
    (1111111109, "07081804"),
    (1111111111, "14050471"),
    (1234567890, "89005924"),
    (2000000000, "69279037"),
    (20000000000, "65353130"),
]

SECRET = "JBSWY3DPEHPK3PXP"
T0 = 1_700_000_010  # aligned to a 30s step boundary


class TestBase32:
    def test_known_encoding(self):
        assert totp.b32encode(b"12345678901234567890") == RFC_SECRET

    def test_round_trip_20_bytes(self):
        for _ in range(50):
            data = os.urandom(20)
            assert totp.b32decode(totp.b32encode(data)) == data

    def test_encode_has_no_padding(self):
        assert "=" not in totp.b32encode(b"abc")

    def test_decode_is_case_insensitive_and_strips_padding(self):
        assert totp.b32decode(RFC_SECRET.lower()) == b"12345678901234567890"
        assert totp.b32decode("MFRGG===") == b"abc"

    @pytest.mark.parametrize("bad", ["ABC1", "ABC 2", "A=B", "ÄBC", "0OOO"])
    def test_invalid_characters(self, bad):
        with pytest.raises(InvalidSecretError):
            totp.b32decode(bad)

    def test_generated_secret(self):
        secret = totp.generate_secret()
        assert len(secret) == 32
        assert len(totp.b32decode(secret)) == 20
        assert secret != totp.generate_secret()


class TestGenerate:
    @pytest.mark.parametrize("for_time,expected", RFC_VECTORS)
    def test_rfc6238_vectors(self, for_time, expected):
        assert totp.generate(RFC_SECRET, for_time, digits=8) == expected

    def test_stable_within_step(self):
        assert totp.generate(SECRET, T0) == totp.generate(SECRET, T0 + 29)
        assert totp.generate(SECRET, T0) == totp.generate(SECRET, T0 + 29.999)

    def test_changes_at_step_boundary(self):
        assert totp.generate(RFC_SECRET, 1111111109, digits=8) != totp.generate(RFC_SECRET, 1111111111, digits=8)

    def test_zero_padded_to_digits(self):
        code = totp.generate(RFC_SECRET, 1111111109, digits=8)
        assert code.startswith("0") and len(code) == 8
        assert len(totp.generate(SECRET, T0)) == 6

    def test_accepts_datetime(self):
        when = datetime.fromtimestamp(1234567890, tz=timezone.utc)
        assert totp.generate(RFC_SECRET, when, digits=8) == "89005924"

    def test_invalid_secret(self):
        with pytest.raises(InvalidSecretError):
            totp.generate("not-base32!", T0)


class TestVerify:
    def test_current_code(self):
        assert totp.verify(SECRET, totp.generate(SECRET, T0), for_time=T0)

    def test_now(self):
        assert totp.verify(SECRET, totp.generate(SECRET))

    def test_window_tolerance(self):
        assert totp.verify(SECRET, totp.generate(SECRET, T0 + 29), window=1, for_time=T0)
        assert totp.verify(SECRET, totp.generate(SECRET, T0 - 30), window=1, for_time=T0)
        assert not totp.verify(SECRET, totp.generate(SECRET, T0 + 61), window=1, for_time=T0)
        assert not totp.verify(SECRET, totp.generate(SECRET, T0 - 31), window=1, for_time=T0)

    def test_zero_window_is_exact(self):
        assert not totp.verify(SECRET, totp.generate(SECRET, T0 + 30), window=0, for_time=T0)

    def test_wrong_code(self):
        assert not totp.verify(SECRET, "000000", for_time=T0)

    @pytest.mark.parametrize("candidate", ["", "12345", "1234567", "abcdef", None, "１２３４５６"])
    def test_malformed_candidates(self, candidate):
        assert totp.verify(SECRET, candidate, for_time=T0) is False

    def test_leading_zeros_matter(self):
        code = totp.generate(RFC_SECRET, 1111111109, digits=8)
        assert totp.verify(RFC_SECRET, code, for_time=1111111109, digits=8)
        assert not totp.verify(RFC_SECRET, code.lstrip("0"), for_time=1111111109, digits=8)

    def test_negative_window(self):
        with pytest.raises(ValueError):
            totp.verify(SECRET, "123456", window=-1)


class TestProvisioningUri:
    def test_uri_shape(self):
        uri = totp.provisioning_uri(SECRET, "alice@example.com", "Cred Vault")
        assert uri == "otpauth://totp/Cred%20Vault:alice%40example.com?secret=JBSWY3DPEHPK3PXP&issuer=Cred%20Vault"

    def test_parseable(self):
        uri = totp.provisioning_uri(SECRET, "bob@example.com")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth" and parsed.netloc == "totp"
        assert unquote(parsed.path) == "/CredVault:bob@example.com"
        assert parse_qs(parsed.query) == {"secret": [SECRET], "issuer": ["CredVault"]}
