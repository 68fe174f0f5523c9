"""
OpenLDAP bootstrap.

Seeds the directory once its StatefulSet is up: registers the custom
githubRepository attribute under cn=config, then creates organizational
units, departments, users and groups from an InitDataSpec.

Every write is idempotent ("entry already exists" counts as success) and
every item is independent: one failing entry is logged and skipped.
"""

import asyncio
import logging
from typing import List, Optional

from ldap3 import Server, Connection, LEVEL
from ldap3.core.exceptions import LDAPException

from .seed import InitDataSpec, OUSpec, DepartmentSpec, UserSpec, GroupSpec

logger = logging.getLogger(__name__)

# LDAP result code 68
RESULT_ENTRY_ALREADY_EXISTS = 68

CONFIG_ADMIN_DN = "cn=admin,cn=config"
SCHEMA_BASE_DN = "cn=schema,cn=config"
CUSTOM_SCHEMA_DN = "cn=devplatform,cn=schema,cn=config"
GITHUB_REPOSITORY_ATTRIBUTE_TYPE = (
    "( 1.3.6.1.4.1.99999.1.1 NAME 'githubRepository' "
    "DESC 'Repository URL (GitHub/Gitea)' "
    "EQUALITY caseIgnoreMatch "
    "SUBSTR caseIgnoreSubstringsMatch "
    "SYNTAX 1.3.6.1.4.1.1466.115.121.1.15 )"
)

FIRST_POSIX_ID = 10001


class DirectoryBootstrapError(Exception):
    """Raised when the directory cannot be reached or the admin bind fails."""
    pass


class DirectoryBootstrapper:
    """Idempotent OpenLDAP seeding over ldap3."""

    def __init__(
        self,
        ldap_url: str,
        base_dn: str,
        admin_dn: str,
        admin_password: str,
        config_password: str = "",
        connect_timeout: float = 30.0
    ):
        self.ldap_url = ldap_url
        self.base_dn = base_dn
        self.admin_dn = admin_dn
        self.admin_password = admin_password
        self.config_password = config_password
        self.connect_timeout = connect_timeout

    @classmethod
    def from_settings(cls, settings) -> "DirectoryBootstrapper":
        return cls(
            ldap_url=settings.ldap_url,
            base_dn=settings.ldap_base_dn,
            admin_dn=settings.ldap_admin_dn,
            admin_password=settings.ldap_admin_password,
            config_password=settings.ldap_config_password,
            connect_timeout=settings.ldap_connect_timeout_seconds,
        )

    def _connect(self, user: Optional[str] = None, password: Optional[str] = None) -> Connection:
        server = Server(self.ldap_url, connect_timeout=self.connect_timeout)
        return Connection(
            server,
            user=user,
            password=password,
            receive_timeout=self.connect_timeout,
            raise_exceptions=False
        )

    # =========================================================================
    # READINESS
    # =========================================================================

    def is_reachable(self) -> bool:
        """Open (and close) a connection to the LDAP server."""
        conn = self._connect()
        try:
            conn.open()
            return True
        except LDAPException as e:
            logger.debug(f"[LDAP] Not ready yet: {e}")
            return False
        finally:
            if not conn.closed:
                conn.unbind()

    async def wait_for_ready(self, timeout: float = 120.0, interval: float = 2.0) -> None:
        """Poll until the server accepts connections; raise DirectoryBootstrapError at the deadline."""
        logger.info(f"[LDAP] Waiting for LDAP to be ready at {self.ldap_url}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await asyncio.to_thread(self.is_reachable):
                logger.info("[LDAP] LDAP is ready")
                return
            if loop.time() >= deadline:
                raise DirectoryBootstrapError(f"timeout waiting for LDAP at {self.ldap_url}")
            await asyncio.sleep(interval)

    # =========================================================================
    # SEEDING
    # =========================================================================

    def initialize(self, init_data: Optional[InitDataSpec]) -> None:
        """
        Apply a seed to the directory.

        Schema registration failure is a warning only. Failure to connect or
        bind as admin raises DirectoryBootstrapError; per-entry failures are
        logged and skipped.
        """
        if init_data is None:
            logger.info("[LDAP] No init data, skipping initialization")
            return

        logger.info(f"[LDAP] Starting LDAP initialization at {self.ldap_url} (base {self.base_dn})")

        try:
            self.ensure_custom_schema()
        except (LDAPException, DirectoryBootstrapError) as e:
            logger.warning(f"[LDAP] Failed to ensure custom schema (githubRepository may already exist): {e}")

        conn = self._connect(self.admin_dn, self.admin_password)
        try:
            try:
                bound = conn.bind()
            except LDAPException as e:
                raise DirectoryBootstrapError(f"failed to connect to LDAP: {e}") from e
            if not bound:
                raise DirectoryBootstrapError(f"failed to bind as admin: {conn.result.get('description')}")

            logger.info("[LDAP] Connected to LDAP as admin")

            for ou in init_data.organizational_units:
                self._apply("OU", ou.name, lambda: self.create_ou(conn, ou))

            for dept in init_data.departments:
                self._apply("department", dept.name, lambda: self.create_department(conn, dept))

            for uid_number, user in enumerate(init_data.users, start=FIRST_POSIX_ID):
                self._apply("user", user.uid, lambda: self.create_user(conn, user, uid_number))

            for gid_number, group in enumerate(init_data.groups, start=FIRST_POSIX_ID):
                self._apply("group", group.name, lambda: self.create_group(conn, group, gid_number))
        finally:
            conn.unbind()

        logger.info("[LDAP] ✅ LDAP initialization completed")

    @staticmethod
    def _apply(kind: str, name: str, create) -> bool:
        try:
            create()
            return True
        except (LDAPException, DirectoryBootstrapError) as e:
            logger.warning(f"[LDAP] Failed to create {kind} {name}: {e}")
            return False

    @staticmethod
    def _add(conn: Connection, dn: str, object_classes: List[str], attributes: dict) -> bool:
        """
        Add an entry. Returns True if created, False if it already existed.

        Raises DirectoryBootstrapError for any other result.
        """
        if conn.add(dn, object_classes, attributes):
            return True
        result = conn.result or {}
        if result.get("result") == RESULT_ENTRY_ALREADY_EXISTS:
            return False
        raise DirectoryBootstrapError(f"add {dn} failed: {result.get('description')} {result.get('message', '')}".strip())

    def ensure_custom_schema(self) -> None:
        """Register the githubRepository attribute type in cn=config if missing."""
        logger.info("[LDAP] Ensuring custom LDAP schema (githubRepository attribute)")

        conn = self._connect(CONFIG_ADMIN_DN, self.config_password)
        try:
            if not conn.bind():
                raise DirectoryBootstrapError(f"failed to bind as config admin: {conn.result.get('description')}")

            if conn.search(SCHEMA_BASE_DN, "(cn=*devplatform)", search_scope=LEVEL, attributes=["cn"]) and conn.entries:
                logger.info("[LDAP] Custom schema already exists, skipping")
                return

            created = self._add(
                conn,
                CUSTOM_SCHEMA_DN,
                ["olcSchemaConfig"],
                {"cn": "devplatform", "olcAttributeTypes": [GITHUB_REPOSITORY_ATTRIBUTE_TYPE]}
            )
            if created:
                logger.info("[LDAP] Custom schema registered (githubRepository attribute)")
        finally:
            conn.unbind()

    def create_ou(self, conn: Connection, ou: OUSpec) -> bool:
        dn = f"ou={ou.name},{self.base_dn}"
        attributes = {"ou": ou.name}
        if ou.description:
            attributes["description"] = ou.description

        created = self._add(conn, dn, ["organizationalUnit"], attributes)
        if created:
            logger.info(f"[LDAP] Created OU {ou.name}")
        else:
            logger.debug(f"[LDAP] OU {ou.name} already exists")
        return created

    def create_department(self, conn: Connection, dept: DepartmentSpec) -> bool:
        dn = f"ou={dept.name},ou=departments,{self.base_dn}"

        object_classes = ["organizationalUnit"]
        if dept.repositories:
            object_classes.append("extensibleObject")

        attributes = {"ou": dept.name}
        if dept.description:
            attributes["description"] = dept.description
        if dept.manager:
            attributes["manager"] = f"uid={dept.manager},ou=users,{self.base_dn}"
        if dept.repositories:
            attributes["githubRepository"] = list(dept.repositories)

        created = self._add(conn, dn, object_classes, attributes)
        if created:
            logger.info(f"[LDAP] Created department {dept.name}")
        else:
            logger.debug(f"[LDAP] Department {dept.name} already exists")
        return created

    def create_user(self, conn: Connection, user: UserSpec, uid_number: int) -> bool:
        dn = f"uid={user.uid},ou=users,{self.base_dn}"

        object_classes = ["inetOrgPerson", "posixAccount", "shadowAccount"]
        if user.repositories:
            object_classes.append("extensibleObject")

        attributes = {
            "uid": user.uid,
            "cn": user.common_name,
            "sn": user.surname,
            "mail": user.email,
            "uidNumber": str(uid_number),
            "gidNumber": str(uid_number),  # Private group per user
            "homeDirectory": f"/home/{user.uid}",
            "userPassword": user.password,
        }
        if user.given_name:
            attributes["givenName"] = user.given_name
        if user.department:
            attributes["departmentNumber"] = user.department
        if user.repositories:
            attributes["githubRepository"] = list(user.repositories)

        created = self._add(conn, dn, object_classes, attributes)
        if created:
            logger.info(f"[LDAP] Created user {user.uid} (uidNumber {uid_number})")
        else:
            logger.debug(f"[LDAP] User {user.uid} already exists")
        return created

    def member_dn(self, member: str) -> str:
        if member.startswith("cn=") or member.startswith("uid="):
            return member
        return f"uid={member},ou=users,{self.base_dn}"

    def create_group(self, conn: Connection, group: GroupSpec, gid_number: int) -> bool:
        dn = f"cn={group.name},ou=groups,{self.base_dn}"

        # groupOfNames requires at least one member
        members = group.members or [f"cn=admin,{self.base_dn}"]
        member_dns = [self.member_dn(m) for m in members]

        attributes = {
            "cn": group.name,
            "gidNumber": str(gid_number),
            "member": member_dns,
        }
        if group.description:
            attributes["description"] = group.description

        created = self._add(conn, dn, ["groupOfNames", "posixGroup"], attributes)
        if created:
            logger.info(f"[LDAP] Created group {group.name} (gidNumber {gid_number}, {len(member_dns)} members)")
        else:
            logger.debug(f"[LDAP] Group {group.name} already exists")
        return created
