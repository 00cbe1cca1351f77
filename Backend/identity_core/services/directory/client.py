"""
LDAP directory client.

Implements:
- service-account connection test with user count
- password verification by search-then-rebind as the user's DN
- full snapshot of users and group memberships for sync

ldap3 is blocking; every public coroutine runs its protocol work in the
default executor so request handlers and sync ticks keep running.
"""

import asyncio
import functools
import ssl
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog
from ldap3 import AUTO_BIND_NONE, NO_ATTRIBUTES, NONE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException

from identity_core.core.exceptions import DirectoryUnreachableError
from identity_core.models.identity import DirectoryConfig


logger = structlog.get_logger(__name__)

DEFAULT_GROUP_FILTER = "(|(objectClass=groupOfNames)(objectClass=groupOfUniqueNames)(objectClass=group))"
PAGE_SIZE = 500
INVALID_CREDENTIALS = 49


# ===========================================
# Results
# ===========================================

@dataclass(frozen=True)
class DirectoryUser:
    """A user entry as read from the directory."""

    dn: str
    email: Optional[str]
    name: Optional[str]
    username: Optional[str] = None


@dataclass
class DirectorySnapshot:
    users: list[DirectoryUser]
    # lowercased member DN -> group DNs
    memberships: dict[str, list[str]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def groups_of(self, dn: str) -> list[str]:
        return self.memberships.get(dn.lower(), [])


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
    user_count: Optional[int] = None


@dataclass(frozen=True)
class Verified:
    identity: DirectoryUser


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class WrongPassword:
    pass


@dataclass(frozen=True)
class Unreachable:
    reason: str


# Outcome of a directory password check
BindOutcome = Union[Verified, NotFound, WrongPassword, Unreachable]


# ===========================================
# Helpers
# ===========================================

def escape_filter_value(value: str) -> str:
    """Escape a value for interpolation into an LDAP search filter."""
    return (
        value.replace("\\", "\\5c")
        .replace("*", "\\2a")
        .replace("(", "\\28")
        .replace(")", "\\29")
        .replace("\x00", "\\00")
    )


def _first_value(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _all_values(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [_first_value(item) for item in value if _first_value(item)]


def _entries(response: Optional[list]) -> list[dict]:
    return [item for item in (response or []) if item.get("type") == "searchResEntry"]


def default_connection_factory(config: DirectoryConfig, user: str, password: str) -> Connection:
    """Build an unbound ldap3 connection for the configured server."""
    timeout = max(config.connection_timeout_ms, 1) / 1000
    tls = Tls(
        validate=ssl.CERT_REQUIRED if config.tls_reject_unauthorized else ssl.CERT_NONE,
    )
    server = Server(
        config.server_url,
        tls=tls,
        connect_timeout=timeout,
        get_info=NONE,
    )
    return Connection(
        server,
        user=user,
        password=password,
        auto_bind=AUTO_BIND_NONE,
        receive_timeout=timeout,
        raise_exceptions=False,
    )


ConnectionFactory = Callable[[DirectoryConfig, str, str], Connection]


# ===========================================
# Client
# ===========================================

class DirectoryClient:
    """Talks to a tenant's LDAP server."""

    def __init__(self, connection_factory: ConnectionFactory = default_connection_factory):
        self._connection_factory = connection_factory

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    # -------------------------------------------
    # Connection handling
    # -------------------------------------------

    def _bind(self, config: DirectoryConfig, user: str, password: str) -> tuple[Connection, bool]:
        """
        Open a connection and bind.

        Returns the connection and whether the bind succeeded. Transport
        failures raise LDAPException.
        """
        conn = self._connection_factory(config, user, password)
        if config.use_starttls:
            conn.open()
            if not conn.start_tls():
                raise LDAPException(f"StartTLS failed: {conn.result}")
        return conn, bool(conn.bind())

    def _service_bind(self, config: DirectoryConfig, bind_password: str) -> Connection:
        conn, bound = self._bind(config, config.bind_dn, bind_password)
        if not bound:
            description = (conn.result or {}).get("description", "bind failed")
            self._unbind(conn)
            raise DirectoryUnreachableError(f"Service account bind failed: {description}")
        return conn

    @staticmethod
    def _unbind(conn: Connection) -> None:
        try:
            conn.unbind()
        except LDAPException:
            pass

    def _paged_search(self, conn: Connection, base: str, search_filter: str, attributes) -> list[dict]:
        response = conn.extend.standard.paged_search(
            search_base=base,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=attributes,
            paged_size=PAGE_SIZE,
            generator=False,
        )
        return _entries(response)

    def _user_attributes(self, config: DirectoryConfig) -> list[str]:
        return [config.email_attribute, config.name_attribute, config.username_attribute]

    def _to_user(self, config: DirectoryConfig, entry: dict) -> DirectoryUser:
        attributes = entry.get("attributes") or {}
        return DirectoryUser(
            dn=entry["dn"],
            email=(_first_value(attributes.get(config.email_attribute)) or "").lower() or None,
            name=_first_value(attributes.get(config.name_attribute)),
            username=_first_value(attributes.get(config.username_attribute)),
        )

    # -------------------------------------------
    # Operations (blocking)
    # -------------------------------------------

    def _test_connection(self, config: DirectoryConfig, bind_password: str) -> ConnectionTestResult:
        try:
            conn = self._service_bind(config, bind_password)
        except (LDAPException, DirectoryUnreachableError) as e:
            return ConnectionTestResult(success=False, message=f"Connection failed: {e}")

        try:
            entries = self._paged_search(conn, config.search_base, config.user_filter, NO_ATTRIBUTES)
        except LDAPException as e:
            return ConnectionTestResult(success=False, message=f"Connection failed: {e}")
        finally:
            self._unbind(conn)

        return ConnectionTestResult(
            success=True,
            message=f"Connection successful. Found {len(entries)} users.",
            user_count=len(entries),
        )

    def _verify_password(
        self,
        config: DirectoryConfig,
        bind_password: str,
        email: str,
        password: str,
    ) -> BindOutcome:
        # Phase 1: locate the entry as the service account
        try:
            conn = self._service_bind(config, bind_password)
        except (LDAPException, DirectoryUnreachableError) as e:
            return Unreachable(str(e))

        search_filter = f"(&{config.user_filter}({config.email_attribute}={escape_filter_value(email)}))"
        try:
            conn.search(
                search_base=config.search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=self._user_attributes(config),
                size_limit=1,
            )
            entries = _entries(conn.response)
        except LDAPException as e:
            return Unreachable(str(e))
        finally:
            self._unbind(conn)

        if not entries:
            return NotFound()
        identity = self._to_user(config, entries[0])

        # An empty password would be an unauthenticated bind, which always succeeds
        if not password:
            return WrongPassword()

        # Phase 2: the user's own bind is the only proof of the password
        try:
            user_conn, bound = self._bind(config, identity.dn, password)
        except LDAPException as e:
            return Unreachable(str(e))

        result_code = (user_conn.result or {}).get("result")
        self._unbind(user_conn)
        if bound:
            return Verified(identity)
        if result_code in (None, INVALID_CREDENTIALS):
            return WrongPassword()
        return Unreachable(f"User bind failed with result {result_code}")

    def _fetch_snapshot(self, config: DirectoryConfig, bind_password: str) -> DirectorySnapshot:
        try:
            conn = self._service_bind(config, bind_password)
        except LDAPException as e:
            raise DirectoryUnreachableError(f"Cannot connect to directory: {e}")

        try:
            try:
                user_entries = self._paged_search(
                    conn, config.search_base, config.user_filter, self._user_attributes(config)
                )
            except LDAPException as e:
                raise DirectoryUnreachableError(f"User search failed: {e}")

            snapshot = DirectorySnapshot(users=[self._to_user(config, entry) for entry in user_entries])

            if config.group_search_base and config.role_mappings:
                try:
                    group_entries = self._paged_search(
                        conn,
                        config.group_search_base,
                        config.group_filter or DEFAULT_GROUP_FILTER,
                        [config.group_member_attribute],
                    )
                except LDAPException as e:
                    snapshot.warnings.append(f"Group search failed: {e}")
                    group_entries = []

                for entry in group_entries:
                    members = _all_values((entry.get("attributes") or {}).get(config.group_member_attribute))
                    for member in members:
                        snapshot.memberships.setdefault(member.lower(), []).append(entry["dn"])

            return snapshot
        finally:
            self._unbind(conn)

    # -------------------------------------------
    # Operations (async)
    # -------------------------------------------

    async def test_connection(self, config: DirectoryConfig, bind_password: str) -> ConnectionTestResult:
        result = await self._run(self._test_connection, config, bind_password)
        logger.info(
            "Directory connection test",
            company_id=str(config.company_id),
            success=result.success,
            user_count=result.user_count,
        )
        return result

    async def verify_password(
        self,
        config: DirectoryConfig,
        bind_password: str,
        email: str,
        password: str,
    ) -> BindOutcome:
        outcome = await self._run(self._verify_password, config, bind_password, email, password)
        if isinstance(outcome, Unreachable):
            logger.error(
                "Directory unreachable during authentication",
                company_id=str(config.company_id),
                server_url=config.server_url,
                reason=outcome.reason,
            )
        return outcome

    async def fetch_snapshot(self, config: DirectoryConfig, bind_password: str) -> DirectorySnapshot:
        return await self._run(self._fetch_snapshot, config, bind_password)
