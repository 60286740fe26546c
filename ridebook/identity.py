"""
Read-side client for the identity provider (users, grants, project roles and
per-user metadata).

``IdentityClient`` holds the request-scoped caching, the lazy user fields and
the best-effort rules. ``HttpIdentityClient`` reaches the provider's
management and v2 APIs over HTTP, ``InMemoryIdentityClient`` serves fixtures
for tests and local development.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from ridebook.cache import RequestCache
from ridebook.errors import ExternalServiceError, InvalidInputError, NotFoundError
from ridebook.lazy import Lazy, unwrap

logger = logging.getLogger(__name__)

NUMERIC_METADATA_KEYS = ("revenue", "transferCount", "monthlyRevenue", "monthlyCount")
ROUTES_METADATA_KEY = "routes"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_ALNUM_RE = re.compile(r"^[A-Za-z0-9]+$")


def _quote(value: str) -> str:
    return quote(value, safe="")


def decode_metadata_value(encoded: Optional[str]) -> Optional[str]:
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None


def _to_number(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def flatten_roles(grants: List[dict]) -> List[dict]:
    """Unique role keys across grants, keeping a display name when any grant has one."""
    merged: Dict[str, dict] = {}
    for grant in grants:
        for role in grant.get("roles") or []:
            key = role.get("key")
            if not key:
                continue
            existing = merged.get(key)
            if existing is None or (not existing.get("displayName") and role.get("displayName")):
                merged[key] = {"key": key, "displayName": role.get("displayName")}
    return list(merged.values())


def profile_display_name(user: dict) -> Optional[str]:
    profile = ((user.get("human") or {}).get("profile")) or {}
    display = (profile.get("displayName") or "").strip()
    if display:
        return display
    full = f"{profile.get('firstName') or ''} {profile.get('lastName') or ''}".strip()
    return full or None


class IdentityClient:
    """
    Shared behaviour of the identity backends. Subclasses implement the
    ``_fetch_*`` primitives; everything here is cached in the request cache.
    """

    def __init__(self, cache: RequestCache):
        self.cache = cache

    # ---------- primitives ----------

    async def _fetch_user(self, user_id: str, organization_id: Optional[str]) -> dict:
        raise NotImplementedError

    async def _search_users(
        self, limit: int, organization_id: Optional[str]
    ) -> Tuple[List[dict], int]:
        raise NotImplementedError

    async def _check_unique(self, field: str, value: str) -> bool:
        raise NotImplementedError

    async def _fetch_project_roles(
        self, project_id: str, limit: int, organization_id: Optional[str]
    ) -> List[dict]:
        raise NotImplementedError

    async def _fetch_grants(self, user_id: str, organization_id: Optional[str]) -> List[dict]:
        raise NotImplementedError

    async def _fetch_avatar(self, user_id: str, organization_id: Optional[str]) -> Optional[str]:
        raise NotImplementedError

    async def _fetch_metadata(
        self, user_id: str, key: str, organization_id: Optional[str]
    ) -> Optional[str]:
        raise NotImplementedError

    # ---------- users ----------

    async def get_user(self, user_id: str, organization_id: Optional[str] = None) -> dict:
        if not user_id:
            raise InvalidInputError("userId required")

        async def load() -> dict:
            raw = await self._fetch_user(user_id, organization_id)
            if not raw or not raw.get("id"):
                raise InvalidInputError("Malformed user payload")
            return self._lazy_user(raw, organization_id)

        return await self.cache.get_or_load(("identity", "user", organization_id, user_id), load)

    async def list_users(self, limit: int = 100, organization_id: Optional[str] = None) -> List[dict]:
        users, _ = await self._search_users(limit, organization_id)
        enriched = []
        for raw in users:
            if not raw.get("id"):
                continue
            key = ("identity", "user", organization_id, raw["id"])
            user = self.cache.get(key)
            if user is None:
                user = self._lazy_user(raw, organization_id)
                self.cache.set(key, user)
            enriched.append(user)
        return enriched

    async def user_count(self) -> int:
        _, total = await self._search_users(1, None)
        return total

    async def is_unique(self, login_name: str) -> bool:
        if _EMAIL_RE.match(login_name or ""):
            return await self._check_unique("email", login_name)
        if _ALNUM_RE.match(login_name or ""):
            return await self._check_unique("userName", login_name)
        raise InvalidInputError("Invalid email/username format")

    async def users_by_role(
        self, role_key: str, limit: int = 100, organization_id: Optional[str] = None
    ) -> List[dict]:
        matches = []
        for user in await self.list_users(limit, organization_id):
            grants = await unwrap(user["grants"])
            if any(r.get("key") == role_key for g in grants for r in g.get("roles") or []):
                matches.append(user)
        return matches

    async def display_name(self, user_id: str) -> Optional[str]:
        """Profile display name, else "first last", else None. Never raises."""
        if not user_id:
            return None
        try:
            user = await self.get_user(user_id)
        except Exception as exc:
            logger.warning("Could not resolve display name for %s: %s", user_id, exc)
            return None
        return profile_display_name(user)

    # ---------- roles and grants ----------

    async def list_project_roles(
        self, project_id: str, limit: int = 100, organization_id: Optional[str] = None
    ) -> List[dict]:
        async def load() -> List[dict]:
            try:
                return await self._fetch_project_roles(project_id, limit, organization_id)
            except Exception as exc:
                logger.error("Failed to fetch project roles for project %s: %s", project_id, exc)
                return []

        return await self.cache.get_or_load(
            ("identity", "project_roles", organization_id, project_id), load
        )

    async def user_grants(self, user_id: str, organization_id: Optional[str] = None) -> List[dict]:
        try:
            raw_grants = await self._fetch_grants(user_id, organization_id)
        except Exception as exc:
            logger.error("Failed to fetch user grants for user %s: %s", user_id, exc)
            return []

        grants = []
        for raw in raw_grants:
            details = raw.get("details") or {}
            role_keys = [
                r for r in (raw.get("roleKeys") or raw.get("roles") or []) if isinstance(r, str)
            ]
            project_id = raw.get("projectId")
            if role_keys and project_id:
                known = {
                    r["key"]: r.get("displayName")
                    for r in await self.list_project_roles(project_id, 200, organization_id)
                }
                roles = [{"key": k, "displayName": known.get(k)} for k in role_keys]
            else:
                roles = [{"key": k, "displayName": None} for k in role_keys]
            grants.append(
                {
                    "organizationId": raw.get("organizationId") or raw.get("orgId"),
                    "creationDate": details.get("creationDate"),
                    "changeDate": details.get("changeDate"),
                    "projectId": project_id,
                    "projectName": raw.get("projectName"),
                    "state": raw.get("state"),
                    "roles": roles,
                }
            )
        return grants

    # ---------- lazy fields ----------

    async def avatar_url(self, user_id: str, organization_id: Optional[str] = None) -> Optional[str]:
        try:
            return await self._fetch_avatar(user_id, organization_id)
        except Exception as exc:
            logger.error("Failed to fetch avatar for user %s: %s", user_id, exc)
            return None

    async def numeric_metadata(
        self, user_id: str, key: str, organization_id: Optional[str] = None
    ) -> Optional[float]:
        try:
            return _to_number(await self._fetch_metadata(user_id, key, organization_id))
        except Exception as exc:
            logger.error('Failed to fetch metadata "%s" for user %s: %s', key, user_id, exc)
            return None

    async def routes(self, user_id: str, organization_id: Optional[str] = None) -> Optional[list]:
        try:
            text = await self._fetch_metadata(user_id, ROUTES_METADATA_KEY, organization_id)
        except Exception as exc:
            logger.error('Failed to fetch metadata "routes" for user %s: %s', user_id, exc)
            return None
        if not text:
            return None
        try:
            routes = json.loads(text)
        except ValueError:
            logger.warning('Failed to parse JSON metadata "routes" for user %s', user_id)
            return None
        return routes if isinstance(routes, list) else None

    def _lazy_user(self, raw: dict, organization_id: Optional[str]) -> dict:
        user_id = raw["id"]
        grants = Lazy(lambda: self.user_grants(user_id, organization_id))

        async def roles() -> List[dict]:
            return flatten_roles(await grants.get())

        user: Dict[str, Any] = dict(raw)
        user["grants"] = grants
        user["roles"] = Lazy(roles)
        if not raw.get("avatarUrl"):
            user["avatarUrl"] = Lazy(lambda: self.avatar_url(user_id, organization_id))
        for key in NUMERIC_METADATA_KEYS:
            user[key] = Lazy(
                lambda key=key: self.numeric_metadata(user_id, key, organization_id)
            )
        user["routes"] = Lazy(lambda: self.routes(user_id, organization_id))
        return user


class HttpIdentityClient(IdentityClient):
    """Management v1 and v2 REST endpoints of the identity provider."""

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str],
        http: httpx.AsyncClient,
        cache: RequestCache,
    ):
        super().__init__(cache)
        self.base_url = (base_url or "").rstrip("/")
        self.token = token or ""
        self.http = http

    def _headers(self, organization_id: Optional[str]) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token}",
        }
        if organization_id:
            headers["x-zitadel-orgid"] = organization_id
        return headers

    async def _call(
        self,
        method: str,
        path: str,
        organization_id: Optional[str] = None,
        *,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Tuple[int, dict]:
        if not self.base_url:
            raise InvalidInputError("Missing AUTH_ISSUER")
        response = await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers(organization_id),
            json=json_body,
            params=params,
        )
        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}
        return response.status_code, payload if isinstance(payload, dict) else {}

    @staticmethod
    def _raise_for(status: int, payload: dict, path: str) -> None:
        if status >= 400:
            raise ExternalServiceError(
                "identity", status, payload.get("message") or f"{path} failed"
            )

    async def _fetch_user(self, user_id: str, organization_id: Optional[str]) -> dict:
        path = f"/management/v1/users/{_quote(user_id)}"
        status, payload = await self._call("GET", path, organization_id)
        if status == 404:
            raise NotFoundError(f"User {user_id} not found")
        self._raise_for(status, payload, path)
        return payload.get("user") or payload

    async def _search_users(
        self, limit: int, organization_id: Optional[str]
    ) -> Tuple[List[dict], int]:
        path = "/management/v1/users/_search"
        status, payload = await self._call(
            "POST", path, organization_id, json_body={"limit": limit, "offset": 0}
        )
        self._raise_for(status, payload, path)
        total = (payload.get("details") or {}).get("totalResult") or 0
        try:
            total = int(total)
        except (TypeError, ValueError):
            total = 0
        return payload.get("result") or [], total

    async def _check_unique(self, field: str, value: str) -> bool:
        path = "/management/v1/users/_is_unique"
        status, payload = await self._call("GET", path, params={field: value})
        self._raise_for(status, payload, path)
        return bool(payload.get("isUnique"))

    async def _fetch_project_roles(
        self, project_id: str, limit: int, organization_id: Optional[str]
    ) -> List[dict]:
        path = "/zitadel.project.v2.ProjectService/ListProjectRoles"
        status, payload = await self._call(
            "POST",
            path,
            organization_id,
            json_body={"projectId": project_id, "pagination": {"offset": 0, "limit": limit}},
        )
        self._raise_for(status, payload, path)
        raw_roles = payload.get("projectRoles") or payload.get("result") or []
        roles = []
        for raw in raw_roles:
            key = raw.get("roleKey") or raw.get("key")
            if key:
                roles.append({"key": key, "displayName": raw.get("displayName")})
        return roles

    async def _fetch_grants(self, user_id: str, organization_id: Optional[str]) -> List[dict]:
        path = "/management/v1/users/grants/_search"
        status, payload = await self._call(
            "POST",
            path,
            organization_id,
            json_body={
                "query": {"offset": "0", "limit": 100, "asc": True},
                "queries": [{"user_id_query": {"user_id": user_id}}],
            },
        )
        self._raise_for(status, payload, path)
        result = payload.get("result")
        return result if isinstance(result, list) else []

    async def _fetch_avatar(self, user_id: str, organization_id: Optional[str]) -> Optional[str]:
        path = f"/v2/users/{_quote(user_id)}"
        status, payload = await self._call("GET", path, organization_id)
        self._raise_for(status, payload, path)
        user = payload.get("user") or payload
        for candidate in (
            user.get("avatarUrl"),
            (user.get("profile") or {}).get("avatarUrl"),
            ((user.get("human") or {}).get("profile") or {}).get("avatarUrl"),
        ):
            if isinstance(candidate, str) and candidate:
                return candidate
        return None

    async def _fetch_metadata(
        self, user_id: str, key: str, organization_id: Optional[str]
    ) -> Optional[str]:
        path = f"/management/v1/users/{_quote(user_id)}/metadata/{_quote(key)}"
        status, payload = await self._call("GET", path, organization_id)
        if status == 404:
            return None
        self._raise_for(status, payload, path)
        encoded = (payload.get("metadata") or {}).get("value") or payload.get("value")
        if encoded is None and isinstance(payload.get("result"), list) and payload["result"]:
            encoded = payload["result"][0].get("value")
        return decode_metadata_value(encoded)


class InMemoryIdentityClient(IdentityClient):
    """
    Fixture-backed identity provider. ``directory`` is shared across requests
    so tests and local runs can seed users once.
    """

    def __init__(self, cache: RequestCache, directory: Optional["IdentityDirectory"] = None):
        super().__init__(cache)
        self.directory = directory or IdentityDirectory()

    async def _fetch_user(self, user_id: str, organization_id: Optional[str]) -> dict:
        user = self.directory.users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def _search_users(
        self, limit: int, organization_id: Optional[str]
    ) -> Tuple[List[dict], int]:
        users = list(self.directory.users.values())
        return users[:limit], len(users)

    async def _check_unique(self, field: str, value: str) -> bool:
        for user in self.directory.users.values():
            if field == "userName" and user.get("userName") == value:
                return False
            if field == "email" and ((user.get("human") or {}).get("email") or {}).get("email") == value:
                return False
        return True

    async def _fetch_project_roles(
        self, project_id: str, limit: int, organization_id: Optional[str]
    ) -> List[dict]:
        return list(self.directory.project_roles.get(project_id, []))[:limit]

    async def _fetch_grants(self, user_id: str, organization_id: Optional[str]) -> List[dict]:
        return list(self.directory.grants.get(user_id, []))

    async def _fetch_avatar(self, user_id: str, organization_id: Optional[str]) -> Optional[str]:
        return self.directory.avatars.get(user_id)

    async def _fetch_metadata(
        self, user_id: str, key: str, organization_id: Optional[str]
    ) -> Optional[str]:
        return self.directory.metadata.get((user_id, key))


class IdentityDirectory:
    """Process-wide fixture store behind ``InMemoryIdentityClient``."""

    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.grants: Dict[str, List[dict]] = {}
        self.project_roles: Dict[str, List[dict]] = {}
        self.avatars: Dict[str, str] = {}
        self.metadata: Dict[Tuple[str, str], str] = {}

    def add_user(
        self,
        user_id: str,
        *,
        user_name: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
        display_name: str = "",
        email: str = "",
        roles: Optional[List[str]] = None,
        project_id: str = "ridebook",
    ) -> dict:
        user = {
            "id": user_id,
            "userName": user_name or user_id,
            "state": "USER_STATE_ACTIVE",
            "loginNames": [user_name or user_id],
            "preferredLoginName": user_name or user_id,
            "human": {
                "profile": {
                    "firstName": first_name,
                    "lastName": last_name,
                    "displayName": display_name,
                },
                "email": {"email": email},
            },
        }
        self.users[user_id] = user
        if roles:
            self.grants.setdefault(user_id, []).append(
                {"projectId": project_id, "roleKeys": list(roles), "state": "USER_GRANT_STATE_ACTIVE"}
            )
        return user
