"""
Dependency wiring for the FastAPI app.

``Services`` lives as long as the process and is built in the app lifespan.
``RequestContext`` is built per inbound request and owns the request cache,
the caller id and the request-scoped clients.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property
from typing import Optional

import httpx
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ridebook.auth import TokenVerifier
from ridebook.cache import RequestCache
from ridebook.config import Settings
from ridebook.db import InMemoryMirrorClient, MirrorClient, SqlMirrorClient
from ridebook.errors import ExternalServiceError, InvalidInputError, UnauthenticatedError
from ridebook.identity import (
    HttpIdentityClient,
    IdentityClient,
    IdentityDirectory,
    InMemoryIdentityClient,
)
from ridebook.ledger import MasterLedger
from ridebook.sheets import (
    GoogleSheetsClient,
    InMemorySheetsClient,
    ServiceAccountCredentials,
    SheetsClient,
    Workbook,
)
from ridebook.statements import MonthlyStatementBuilder, PostProcessHook
from ridebook.transfers import TransferService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    http: httpx.AsyncClient
    mirror: MirrorClient
    sheets_backend: Optional[InMemorySheetsClient] = None
    identity_directory: Optional[IdentityDirectory] = None
    verifier: Optional[TokenVerifier] = None

    @classmethod
    def build(cls, settings: Settings, http: Optional[httpx.AsyncClient] = None) -> "Services":
        http = http or httpx.AsyncClient(timeout=30.0)
        if settings.use_in_memory_backends or not settings.database_url:
            mirror: MirrorClient = InMemoryMirrorClient()
        else:
            mirror = SqlMirrorClient(settings.database_url)
        verifier = None
        if settings.auth_issuer:
            verifier = TokenVerifier(
                settings.auth_issuer,
                http,
                audience=settings.auth_audience,
                jwks_url=settings.auth_jwks_url,
            )
        else:
            logger.warning("AUTH_ISSUER is not set, bearer tokens will be rejected")

        if settings.use_in_memory_backends:
            logger.info("Using in-memory spreadsheet and identity backends")
            return cls(
                settings=settings,
                http=http,
                mirror=mirror,
                sheets_backend=InMemorySheetsClient(),
                identity_directory=IdentityDirectory(),
                verifier=verifier,
            )
        return cls(settings=settings, http=http, mirror=mirror, verifier=verifier)

    async def aclose(self) -> None:
        await self.http.aclose()
        if isinstance(self.mirror, SqlMirrorClient):
            self.mirror.dispose()


class RequestContext:
    def __init__(self, services: Services, caller_id: Optional[str] = None):
        self.services = services
        self.settings = services.settings
        self.caller_id = caller_id
        self.cache = RequestCache()

    @cached_property
    def sheets_client(self) -> SheetsClient:
        if self.services.sheets_backend is not None:
            return self.services.sheets_backend
        if not self.settings.google_sheets_client_email or not self.settings.sheets_private_key_pem:
            raise InvalidInputError(
                "Missing GOOGLE_SHEETS_CLIENT_EMAIL or GOOGLE_SHEETS_PRIVATE_KEY"
            )
        credentials = ServiceAccountCredentials(
            client_email=self.settings.google_sheets_client_email,
            private_key=self.settings.sheets_private_key_pem,
        )
        return GoogleSheetsClient(
            self.settings.google_sheets_spreadsheet_id or "",
            credentials,
            self.services.http,
            self.cache,
        )

    @cached_property
    def workbook(self) -> Workbook:
        return Workbook(self.sheets_client, self.cache)

    @cached_property
    def identity(self) -> IdentityClient:
        if self.services.identity_directory is not None:
            return InMemoryIdentityClient(self.cache, self.services.identity_directory)
        return HttpIdentityClient(
            self.settings.auth_issuer,
            self.settings.org_user_manager_token,
            self.services.http,
            self.cache,
        )

    @cached_property
    def ledger(self) -> MasterLedger:
        return MasterLedger(self.workbook)

    @cached_property
    def statements(self) -> MonthlyStatementBuilder:
        hook = PostProcessHook(self.settings.sheets_webapp_url, self.services.http)
        return MonthlyStatementBuilder(self.workbook, self.ledger, hook, self.identity)

    @cached_property
    def transfers(self) -> TransferService:
        return TransferService(
            self.ledger,
            self.statements,
            self.identity,
            self.services.mirror,
            caller_id=self.caller_id,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


bearer_scheme = HTTPBearer(auto_error=False)


async def resolve_caller_id(
    request: Request,
    services: Services,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Optional[str]:
    """
    The verified ``sub`` of the bearer token. Without a token the gateway
    header is used when trusted, otherwise the caller is anonymous.
    """
    if credentials is not None:
        if services.verifier is None:
            raise HTTPException(status_code=401, detail="Bearer tokens are not accepted")
        try:
            claims = await services.verifier.verify(credentials.credentials)
        except UnauthenticatedError as exc:
            logger.info("Rejected bearer token: %s", exc)
            raise HTTPException(
                status_code=401, detail=str(exc), headers={"WWW-Authenticate": "Bearer"}
            ) from exc
        except ExternalServiceError as exc:
            logger.error("Could not load signing keys: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return claims["sub"]

    settings = services.settings
    if settings.trust_gateway_subject_header:
        return request.headers.get(settings.auth_subject_header) or None
    if request.headers.get(settings.auth_subject_header):
        logger.debug("Ignoring untrusted %s header", settings.auth_subject_header)
    return None


async def get_request_context(
    request: Request,
    services: Services = Depends(get_services),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> RequestContext:
    return RequestContext(services, await resolve_caller_id(request, services, credentials))
