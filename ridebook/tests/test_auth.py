import asyncio
import base64
import json
import time
import unittest

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from google.auth import crypt, jwt

from ridebook.app import create_app
from ridebook.auth import TokenVerifier, jwk_to_pem
from ridebook.config import Settings
from ridebook.dependencies import Services
from ridebook.errors import ExternalServiceError, UnauthenticatedError

ISSUER = "https://id.example"
AUDIENCE = "ridebook"


def _b64_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64_json(value: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(value).encode("utf-8")).rstrip(b"=").decode("ascii")


class SigningKey:
    def __init__(self, key_id: str):
        self.key_id = key_id
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        self.signer = crypt.RSASigner.from_string(pem, key_id=key_id)

    def jwk(self) -> dict:
        numbers = self.key.public_key().public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": "RS256",
            "kid": self.key_id,
            "n": _b64_uint(numbers.n),
            "e": _b64_uint(numbers.e),
        }

    def token(self, **overrides) -> str:
        now = int(time.time())
        claims = {"iss": ISSUER, "sub": "u1", "aud": [AUDIENCE, "other"], "iat": now, "exp": now + 300}
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(self.signer, claims).decode("utf-8")


KEY = SigningKey("k1")
ROTATED_KEY = SigningKey("k2")
ATTACKER_KEY = SigningKey("k1")


class JwksServer:
    def __init__(self, *keys: SigningKey):
        self.keys = list(keys)
        self.status = 200
        self.fetches = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path != "/oauth/v2/keys":
            return httpx.Response(404)
        self.fetches += 1
        if self.status != 200:
            return httpx.Response(self.status, json={})
        return httpx.Response(200, json={"keys": [k.jwk() for k in self.keys]})


class JwkConversionTests(unittest.TestCase):
    def test_rsa_key_becomes_pem(self):
        pem = jwk_to_pem(KEY.jwk())
        self.assertTrue(pem.startswith("-----BEGIN PUBLIC KEY-----"))

    def test_other_key_types_are_skipped(self):
        self.assertIsNone(jwk_to_pem({"kty": "EC", "kid": "e1", "crv": "P-256"}))
        self.assertIsNone(jwk_to_pem({"kty": "RSA", "kid": "r1"}))


class TokenVerifierTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.jwks = JwksServer(KEY)
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(self.jwks.handler))
        self.addAsyncCleanup(self.http.aclose)
        self.verifier = TokenVerifier(ISSUER + "/", self.http, audience=AUDIENCE)

    async def assertRejected(self, token: str) -> None:
        with self.assertRaises(UnauthenticatedError):
            await self.verifier.verify(token)

    async def test_valid_token_returns_claims(self):
        claims = await self.verifier.verify(KEY.token(sub="d1"))
        self.assertEqual(claims["sub"], "d1")
        await self.verifier.verify(KEY.token())
        self.assertEqual(self.jwks.fetches, 1)

    async def test_token_signed_by_another_key_is_rejected(self):
        await self.assertRejected(ATTACKER_KEY.token())

    async def test_tampered_payload_is_rejected(self):
        header, _, signature = KEY.token(sub="u1").split(".")
        now = int(time.time())
        forged = _b64_json({"iss": ISSUER, "sub": "u2", "aud": AUDIENCE, "iat": now, "exp": now + 300})
        await self.assertRejected(f"{header}.{forged}.{signature}")

    async def test_unsigned_and_malformed_tokens_are_rejected(self):
        now = int(time.time())
        unsigned = ".".join(
            [
                _b64_json({"alg": "none", "kid": "k1"}),
                _b64_json({"iss": ISSUER, "sub": "u1", "aud": AUDIENCE, "iat": now, "exp": now + 300}),
                "",
            ]
        )
        await self.assertRejected(unsigned)
        await self.assertRejected("not-a-token")
        await self.assertRejected(KEY.token().replace(".", "", 1))

    async def test_claims_are_checked(self):
        now = int(time.time())
        await self.assertRejected(KEY.token(iss="https://evil.example"))
        await self.assertRejected(KEY.token(aud="someone-else"))
        await self.assertRejected(KEY.token(iat=now - 7200, exp=now - 3600))
        await self.assertRejected(KEY.token(sub=None))

    async def test_audience_check_is_optional(self):
        verifier = TokenVerifier(ISSUER, self.http)
        claims = await verifier.verify(KEY.token(aud="someone-else"))
        self.assertEqual(claims["sub"], "u1")

    async def test_rotated_key_triggers_one_refetch(self):
        verifier = TokenVerifier(ISSUER, self.http, refresh_interval=0)
        await verifier.verify(KEY.token())
        self.jwks.keys.append(ROTATED_KEY)
        claims = await verifier.verify(ROTATED_KEY.token(sub="u2"))
        self.assertEqual(claims["sub"], "u2")
        self.assertEqual(self.jwks.fetches, 2)

    async def test_unknown_key_refetch_is_throttled(self):
        await self.verifier.verify(KEY.token())
        await self.assertRejected(ROTATED_KEY.token())
        self.assertEqual(self.jwks.fetches, 1)

    async def test_key_endpoint_failure(self):
        self.jwks.status = 503
        with self.assertRaises(ExternalServiceError):
            await self.verifier.verify(KEY.token())


BOOK = """
mutation {
  bookTransfer(rideDateISO: "2025-03-10", rideTime: "14:30", pickup: "A", dropoff: "B") {
    transferId
    customerId
  }
}
"""
CANCEL = "mutation($id: ID!) { cancelTransfer(transferId: $id) { state } }"
GET = "query($id: ID!) { getTransfer(transferId: $id) { state } }"


class BearerCallerTests(unittest.TestCase):
    def start(self, **overrides) -> None:
        settings = Settings(
            use_in_memory_backends=True,
            auth_issuer=ISSUER,
            auth_audience=AUDIENCE,
            **overrides,
        )
        self.jwks = JwksServer(KEY)
        services = Services.build(
            settings, http=httpx.AsyncClient(transport=httpx.MockTransport(self.jwks.handler))
        )
        self.addCleanup(lambda: asyncio.run(services.aclose()))
        services.identity_directory.add_user("u1", display_name="Hotel Sacher")
        services.identity_directory.add_user("u2", first_name="Eva", last_name="Gruber")

        self.client = TestClient(create_app(settings, services))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def post(self, query: str, variables=None, headers=None) -> httpx.Response:
        return self.client.post(
            "/api/graphql", json={"query": query, "variables": variables}, headers=headers or {}
        )

    def gql(self, query: str, variables=None, headers=None) -> dict:
        response = self.post(query, variables, headers)
        self.assertEqual(response.status_code, 200)
        return response.json()

    def bearer(self, subject: str) -> dict:
        return {"Authorization": f"Bearer {KEY.token(sub=subject)}"}

    def test_caller_comes_from_verified_token(self):
        self.start()
        booked = self.gql(BOOK, headers=self.bearer("u2"))
        self.assertEqual(booked["data"]["bookTransfer"]["customerId"], "u2")

    def test_forged_subject_header_is_ignored(self):
        self.start()
        booked = self.gql(BOOK, headers=self.bearer("u1"))
        transfer_id = booked["data"]["bookTransfer"]["transferId"]

        forged = self.gql(CANCEL, {"id": transfer_id}, headers={"X-Auth-Subject": "u1"})
        self.assertEqual(forged["errors"][0]["extensions"]["code"], "INVALID_INPUT")
        self.assertEqual(forged["errors"][0]["message"], "Anonymous")

        # A valid token for u2 wins over a header claiming u1.
        mixed = self.gql(
            CANCEL, {"id": transfer_id}, headers={**self.bearer("u2"), "X-Auth-Subject": "u1"}
        )
        self.assertEqual(mixed["errors"][0]["extensions"]["code"], "FORBIDDEN")

        state = self.gql(GET, {"id": transfer_id})
        self.assertEqual(state["data"]["getTransfer"]["state"], "pending")

    def test_invalid_token_is_unauthorized(self):
        self.start()
        response = self.post(BOOK, headers={"Authorization": f"Bearer {ATTACKER_KEY.token()}"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["www-authenticate"], "Bearer")

        expired = KEY.token(iat=int(time.time()) - 7200, exp=int(time.time()) - 3600)
        response = self.post(BOOK, headers={"Authorization": f"Bearer {expired}"})
        self.assertEqual(response.status_code, 401)

    def test_key_endpoint_down_is_bad_gateway(self):
        self.start()
        self.jwks.status = 500
        response = self.post(BOOK, headers=self.bearer("u1"))
        self.assertEqual(response.status_code, 502)

    def test_trusted_gateway_header(self):
        self.start(trust_gateway_subject_header=True)
        booked = self.gql(BOOK, headers={"X-Auth-Subject": "u2"})
        self.assertEqual(booked["data"]["bookTransfer"]["customerId"], "u2")

    def test_tokens_rejected_without_issuer(self):
        settings = Settings(use_in_memory_backends=True)
        client = TestClient(create_app(settings))
        with client:
            response = client.post(
                "/api/graphql", json={"query": BOOK}, headers=self.bearer("u1")
            )
        self.assertEqual(response.status_code, 401)


if __name__ == "__main__":
    unittest.main()
