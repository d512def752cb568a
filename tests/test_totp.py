"""Tests for the RFC 6238 helpers."""

from urllib.parse import parse_qs, urlparse

from chronos.service import totp

# RFC 6238 appendix B SHA1 seed "12345678901234567890"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestGenerate:
    def test_rfc_6238_vectors(self):
        # eight-digit reference values from the RFC, truncated to our six digits
        vectors = {
            59: "94287082",
            1111111109: "07081804",
            1111111111: "14050471",
            1234567890: "89005924",
            2000000000: "69279037",
        }
        for timestamp, expected in vectors.items():
            assert totp.generate_totp(RFC_SECRET, timestamp, digits=8) == expected
            assert totp.generate_totp(RFC_SECRET, timestamp) == expected[-6:]

    def test_generated_secret_is_base32(self):
        secret = totp.generate_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_invalid_secret_yields_no_code(self):
        assert totp.generate_totp("not base32 !!", 1_700_000_000) == ""


class TestVerifyWindow:
    """A token stays valid one step either side, never two."""

    now = 1_700_000_015.0

    def _code(self, secret, steps):
        return totp.generate_totp(secret, self.now + steps * 30)

    def test_current_step(self):
        secret = totp.generate_secret()
        assert totp.verify_totp(secret, self._code(secret, 0), now=self.now)

    def test_adjacent_steps_accepted(self):
        secret = totp.generate_secret()
        assert totp.verify_totp(secret, self._code(secret, -1), now=self.now)
        assert totp.verify_totp(secret, self._code(secret, 1), now=self.now)

    def test_two_steps_away_rejected(self):
        secret = totp.generate_secret()
        for steps in (-2, 2):
            code = self._code(secret, steps)
            nearby = {self._code(secret, s) for s in (-1, 0, 1)}
            if code in nearby:
                continue
            assert not totp.verify_totp(secret, code, now=self.now)

    def test_non_numeric_and_wrong_length_rejected(self):
        secret = totp.generate_secret()
        assert not totp.verify_totp(secret, "", now=self.now)
        assert not totp.verify_totp(secret, "12345", now=self.now)
        assert not totp.verify_totp(secret, "abcdef", now=self.now)
        assert not totp.verify_totp(secret, self._code(secret, 0) + "0", now=self.now)

    def test_non_ascii_digits_rejected(self):
        secret = totp.generate_secret()
        code = self._code(secret, 0)
        # Arabic-Indic and fullwidth renderings of the valid code
        arabic = "".join(chr(0x0660 + int(c)) for c in code)
        fullwidth = "".join(chr(0xFF10 + int(c)) for c in code)

        assert not totp.verify_totp(secret, arabic, now=self.now)
        assert not totp.verify_totp(secret, fullwidth, now=self.now)


def test_provisioning_uri_format():
    uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "user_42", "Chronos")
    parsed = urlparse(uri)

    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    assert parsed.path == "/Chronos:user_42"
    query = parse_qs(parsed.query)
    assert query["secret"] == ["JBSWY3DPEHPK3PXP"]
    assert query["issuer"] == ["Chronos"]
