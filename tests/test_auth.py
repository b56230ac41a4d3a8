import base64
import json
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt
from starlette.requests import Request

import app.auth as auth
from app.stores import MemoryTripStore


GOOGLE_ISS = "https://accounts.google.com"


def _pem_pair() -> tuple:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


PRIVATE_PEM, PUBLIC_PEM = _pem_pair()
OTHER_PRIVATE_PEM, _ = _pem_pair()


def _plain(claims: dict) -> str:
    return base64.b64encode(json.dumps(claims).encode("utf-8")).decode("ascii").rstrip("=")


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode("utf-8")).decode("ascii").rstrip("=")


def _request(headers: dict) -> Request:
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw})


def _jwks() -> dict:
    public = jwk.construct(PUBLIC_PEM, "RS256").to_dict()
    public["kid"] = "k1"
    return {"keys": [public]}


def _signed(claims: dict, key: str = PRIVATE_PEM) -> str:
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": "k1"})


class TestDecodeCredential(unittest.TestCase):
    def setUp(self) -> None:
        self._orig_fetch = auth._fetch_jwks
        auth._fetch_jwks = lambda url, force=False: _jwks()

    def tearDown(self) -> None:
        auth._fetch_jwks = self._orig_fetch

    def test_plain_credential_when_verification_off(self) -> None:
        self.assertEqual(auth.decode_credential(_plain({"sub": "guest_7"}), verify=False), {"sub": "guest_7"})

    def test_plain_credential_rejected_when_verifying(self) -> None:
        self.assertIsNone(auth.decode_credential(_plain({"sub": "guest_7"}), verify=True))

    def test_unverified_jwt_claims(self) -> None:
        token = jwt.encode({"sub": "g-123", "email": "a@b.co"}, "whatever", algorithm="HS256")
        self.assertEqual(auth.decode_credential(token, verify=False)["sub"], "g-123")

    def test_verified_jwt(self) -> None:
        claims = auth.decode_credential(_signed({"sub": "g-123", "iss": GOOGLE_ISS}), verify=True)
        self.assertEqual(claims["sub"], "g-123")

    def test_bad_signature_or_issuer_is_anonymous(self) -> None:
        forged = _signed({"sub": "g-123", "iss": GOOGLE_ISS}, key=OTHER_PRIVATE_PEM)
        self.assertIsNone(auth.decode_credential(forged, verify=True))
        wrong_iss = _signed({"sub": "g-123", "iss": "https://evil.example"})
        self.assertIsNone(auth.decode_credential(wrong_iss, verify=True))

    def test_header_cannot_choose_the_algorithm(self) -> None:
        payload = _segment({"sub": "g-123", "iss": GOOGLE_ISS})
        hs256 = f"{_segment({'alg': 'HS256', 'kid': 'k1'})}.{payload}.c2ln"
        unsigned = f"{_segment({'alg': 'none', 'kid': 'k1'})}.{payload}."
        self.assertIsNone(auth.decode_credential(hs256, verify=True))
        self.assertIsNone(auth.decode_credential(unsigned, verify=True))

    def test_forged_algorithm_resolves_to_anonymous(self) -> None:
        payload = _segment({"sub": "g-123", "iss": GOOGLE_ISS})
        token = f"{_segment({'alg': 'HS256', 'kid': 'k1'})}.{payload}.c2ln"
        store = MemoryTripStore()
        store.add_user(google_id="g-123", email="a@b.co")
        os.environ["TRIPMATE_AUTH_VERIFY"] = "1"
        try:
            self.assertIsNone(auth.resolve_request_user(_request({auth.CREDENTIAL_HEADER: token}), store))
        finally:
            os.environ.pop("TRIPMATE_AUTH_VERIFY", None)

    def test_garbage(self) -> None:
        self.assertIsNone(auth.decode_credential("%%%", verify=False))
        self.assertIsNone(auth.decode_credential("", verify=False))
        self.assertIsNone(auth.decode_credential("a.b.c", verify=False))


class TestResolveUser(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryTripStore()
        self.google_user = self.store.add_user(google_id="g-123", email="a@b.co")
        self.guest = self.store.add_user(username="Guest", auth_provider="guest")

    def test_claims_lookup(self) -> None:
        self.assertEqual(auth.user_from_claims({"sub": "g-123"}, self.store)["id"], self.google_user["id"])
        self.assertEqual(auth.user_from_claims({"sub": f"guest_{self.guest['id']}"}, self.store)["id"], self.guest["id"])

    def test_guest_subject_must_be_a_guest_row(self) -> None:
        self.assertIsNone(auth.user_from_claims({"sub": f"guest_{self.google_user['id']}"}, self.store))
        self.assertIsNone(auth.user_from_claims({"sub": "guest_abc"}, self.store))
        self.assertIsNone(auth.user_from_claims({}, self.store))
        self.assertIsNone(auth.user_from_claims(None, self.store))

    def test_credential_header_and_bearer(self) -> None:
        self.assertEqual(auth.get_credential(_request({auth.CREDENTIAL_HEADER: " tok "})), "tok")
        self.assertEqual(auth.get_credential(_request({"Authorization": "Bearer tok2"})), "tok2")
        self.assertIsNone(auth.get_credential(_request({})))

    def test_resolve_request_user(self) -> None:
        os.environ["TRIPMATE_AUTH_VERIFY"] = "0"
        try:
            request = _request({auth.CREDENTIAL_HEADER: _plain({"sub": f"guest_{self.guest['id']}"})})
            self.assertEqual(auth.resolve_request_user(request, self.store)["id"], self.guest["id"])
            self.assertIsNone(auth.resolve_request_user(_request({}), self.store))
        finally:
            os.environ.pop("TRIPMATE_AUTH_VERIFY", None)


if __name__ == "__main__":
    unittest.main()
