"""
The directory session.

:py:class:`LdapSession` is the only code that talks to the directory
server.  It owns connections (one per thread), translates python-ldap
errors into :py:class:`~ldapstore.exceptions.IdentityStoreError`, and knows
the vendor quirks of identifier lookups and renames.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from ldapstore import ldap

from .conditions import EqualCondition, FilterBuilder
from .dn import DirectoryDn
from .exceptions import AuthenticationError, IdentityStoreError, ModifyOutcome
from .typing import AddModlist, LDAPData, ModifyModList

if TYPE_CHECKING:
    from .options import StoreConfig
    from .query import DirectoryQuery

logger = logging.getLogger(__name__)

#: How many disambiguated RDN values we try when a rename collides.
MAX_RENAME_ATTEMPTS = 5

#: Result codes that mean the modification would leave a mandatory
#: attribute empty, or otherwise break the entry's schema.
SCHEMA_VIOLATIONS = (
    ldap.OBJECT_CLASS_VIOLATION,  # type: ignore[attr-defined]
    ldap.NOT_ALLOWED_ON_RDN,  # type: ignore[attr-defined]
    ldap.OBJECT_CLASS_MODS_PROHIBITED,  # type: ignore[attr-defined]
)


# -----------------------
# Decorators
# -----------------------


def atomic(key: str = "read") -> Callable:
    """
    Run the wrapped :py:class:`LdapSession` method on a connection bound to
    the ``key`` server.

    Calls made while the current thread already holds a connection reuse it,
    so one session method can call another without reconnecting.  Only the
    outermost call opens and closes the connection.

    Args:
        key: ``"read"`` or ``"write"``

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self: "LdapSession", *args, **kwargs) -> Any:
            if self.has_connection():
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                return func(self, *args, **kwargs)
            finally:
                self.disconnect()

        return wrapper

    return real_decorator


class OperationDecorator:
    """
    Hook for attaching request controls to a modify operation.

    Subclass this and override :py:meth:`server_controls`, e.g. to send the
    password policy request control with a password change.
    """

    def server_controls(self) -> list["ldap.LDAPControl"]:
        return []


# -----------------------
# Identifier helpers
# -----------------------


def decode_object_guid(value: bytes) -> str:
    """
    Decode an Active Directory ``objectGUID``.  The first three fields are
    stored little-endian.
    """
    return str(uuid.UUID(bytes_le=value))


def encode_object_guid(value: str) -> bytes:
    return uuid.UUID(value).bytes_le


def decode_edirectory_guid(value: bytes) -> str:
    """Decode an eDirectory ``GUID``, which is stored big-endian."""
    return str(uuid.UUID(bytes=value))


def encode_edirectory_guid(value: str) -> bytes:
    return uuid.UUID(value).bytes


class LdapSession:
    """
    Connection handling and raw directory operations for one server.

    This class is thread-safe -- it will use a different LDAP connection for
    each thread, because python-ldap connections are not.

    Args:
        config: the store configuration; its ``read`` and ``write``
            connection blocks are used to connect

    """

    def __init__(self, config: "StoreConfig") -> None:
        self.config = config
        self.logger = logger
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    # Connections

    def has_connection(self) -> bool:
        return threading.current_thread() in self._ldap_objects

    def set_connection(self, obj: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        self._ldap_objects[threading.current_thread()] = obj

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The current thread's LDAP connection object.
        """
        return self._ldap_objects[threading.current_thread()]

    def _set_tls_options(
        self, ldap_object: "ldap.ldapobject.LDAPObject", config: dict[str, Any]  # type: ignore[name-defined]
    ) -> None:
        """
        Apply the ``tls_*`` keys of a connection block to ``ldap_object``.

        Raises:
            ValueError: ``tls_verify`` is neither ``"never"`` nor ``"always"``
            OSError: a configured TLS file does not exist or is not a file

        """
        require_cert = {
            "never": ldap.OPT_X_TLS_NEVER,  # type: ignore[attr-defined]
            "always": ldap.OPT_X_TLS_DEMAND,  # type: ignore[attr-defined]
        }
        tls_verify = config.get("tls_verify", "never")
        if tls_verify not in require_cert:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, require_cert[tls_verify])  # type: ignore[attr-defined]
        for setting, option in (
            ("tls_ca_certfile", ldap.OPT_X_TLS_CACERTFILE),  # type: ignore[attr-defined]
            ("tls_certfile", ldap.OPT_X_TLS_CERTFILE),  # type: ignore[attr-defined]
            ("tls_keyfile", ldap.OPT_X_TLS_KEYFILE),  # type: ignore[attr-defined]
        ):
            filename = config.get(setting)
            if not filename:
                continue
            if not Path(filename).is_file():
                msg = f"{setting} is not an existing file: {filename}"
                raise OSError(msg)
            ldap_object.set_option(option, filename)
        # Must come last, after every other TLS option
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]

    def _connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Open a connection to the ``key`` server and bind it.

        The connection block (``config.connections[key]``) understands these
        keys: ``url``, ``user``, ``password``, ``use_starttls``,
        ``tls_verify``, ``tls_ca_certfile``, ``tls_certfile``,
        ``tls_keyfile``, ``timeout``, ``sizelimit`` and ``follow_referrals``.

        Args:
            key: "read" or "write"
            dn: bind as this DN instead of the configured user
            password: the password for ``dn``

        Raises:
            ValueError: the ``tls_verify`` value in the configuration is invalid
            OSError: a configured TLS file does not exist or is not a file

        """
        config = self.config.connection(key)
        if not dn:
            dn = config["user"]
            password = config["password"]
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        ldap_object.set_option(
            ldap.OPT_REFERRALS,  # type: ignore[attr-defined]
            1 if config.get("follow_referrals", False) else 0,
        )
        ldap_object.set_option(
            ldap.OPT_NETWORK_TIMEOUT,  # type: ignore[attr-defined]
            float(config.get("timeout", 15.0)),
        )
        if sizelimit := config.get("sizelimit"):
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
        self._set_tls_options(ldap_object, config)
        if config.get("use_starttls", True):
            ldap_object.start_tls_s()
        ldap_object.simple_bind_s(dn, password)
        logger.debug(
            "ldapstore.session.connect key=%s url=%s bind_dn=%s",
            key,
            config["url"],
            dn,
        )
        return ldap_object

    def connect(
        self, key: str, dn: str | None = None, password: str | None = None
    ) -> None:
        """
        Set the per-thread LDAP connection object. Used by the @atomic decorator.
        """
        self.set_connection(self._connect(key, dn=dn, password=password))

    def disconnect(self) -> None:
        self.connection.unbind_s()
        self.remove_connection()

    # Searching

    def _get_pctrls(self, serverctrls):
        """
        Return the paged results controls from the controls the server sent
        back.  These carry the cookie for the next page.
        """
        return [
            c
            for c in serverctrls
            if c.controlType == ldap.SimplePagedResultsControl.controlType
        ]

    @atomic(key="read")
    def search(
        self,
        basedn: str,
        searchfilter: str,
        attributes: list[str] | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> list[LDAPData]:
        """
        Search the directory.

        Args:
            basedn: the base DN to search from
            searchfilter: the LDAP search filter string
            attributes: the attributes to fetch; ``None`` or ``[]`` for all
            scope: LDAP search scope

        Raises:
            IdentityStoreError: the search failed

        Returns:
            List of ``(dn, attrs)`` tuples.

        """
        try:
            data = self.connection.search_s(
                basedn, scope, filterstr=searchfilter, attrlist=attributes or None
            )
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Querying of LDAP failed: base={basedn} filter={searchfilter}"
            raise IdentityStoreError(msg, dn=basedn) from e
        # We have to filter out any references that AD puts in
        return [obj for obj in data if isinstance(obj[1], dict)]

    @atomic(key="read")
    def search_paginated(
        self,
        basedn: str,
        searchfilter: str,
        query: "DirectoryQuery",
        attributes: list[str] | None = None,
    ) -> list[LDAPData]:
        """
        Fetch the next page of results for ``query``.

        The page size is ``query.limit``.  The cookie for the following page
        is stored on ``query.pagination_context``; it is empty once the
        server has no more pages.

        Raises:
            IdentityStoreError: the search failed

        """
        cookie = query.pagination_context.cookie or b""
        paging = ldap.SimplePagedResultsControl(True, size=query.limit, cookie=cookie)  # noqa: FBT003
        try:
            msgid = self.connection.search_ext(
                basedn,
                query.ldap_scope,
                searchfilter,
                attributes or query.returning_attributes or None,
                serverctrls=[paging],
            )
            _, rdata, _, serverctrls = self.connection.result3(msgid)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Paged querying of LDAP failed: base={basedn} filter={searchfilter}"
            raise IdentityStoreError(msg, dn=basedn) from e
        results: list[LDAPData] = [
            (dn, attrs) for dn, attrs in rdata if isinstance(attrs, dict)
        ]
        paged_controls = self._get_pctrls(serverctrls)
        next_cookie = b""
        if paged_controls and paged_controls[0].cookie:
            next_cookie = paged_controls[0].cookie
        query.pagination_context.cookie = next_cookie
        return results

    def filter_by_id(self, identifier: str) -> str:
        """
        Return the filter that finds the entry whose identifier is
        ``identifier``.

        Active Directory ``objectGUID`` and eDirectory ``GUID`` values are
        binary, so those are matched as escaped octet strings.

        Raises:
            ValueError: ``identifier`` is not a UUID, but the directory
                stores identifiers as binary UUIDs

        """
        name = self.config.uuid_attribute
        value: str | bytes = identifier
        if self.config.is_object_guid:
            value = encode_object_guid(identifier)
        elif self.config.is_edirectory and self.config.edirectory_guid:
            value = encode_edirectory_guid(identifier)
        return FilterBuilder().build([EqualCondition(name, value)], []).to_string()

    def lookup_by_id(
        self, basedn: str, identifier: str, attributes: list[str] | None = None
    ) -> LDAPData | None:
        """
        Find the entry below ``basedn`` whose identifier is ``identifier``.

        Returns:
            The ``(dn, attrs)`` tuple, or ``None`` if there is no such entry.

        """
        try:
            searchfilter = self.filter_by_id(identifier)
        except ValueError:
            self.logger.debug(
                "ldapstore.session.lookup.not-a-uuid identifier=%s", identifier
            )
            return None
        results = self.search(basedn, searchfilter, attributes)
        if not results:
            return None
        return results[0]

    # Writing

    @atomic(key="write")
    def create_entry(self, dn: str, modlist: AddModlist) -> None:
        """
        Add the entry ``dn``.

        Raises:
            IdentityStoreError: the add failed

        """
        try:
            self.connection.add_s(dn, modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Could not create entry [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e

    @atomic(key="write")
    def modify(
        self,
        dn: str,
        modlist: ModifyModList,
        decorator: OperationDecorator | None = None,
    ) -> None:
        """
        Apply ``modlist`` to ``dn``.

        Args:
            dn: the entry to modify
            modlist: the modifications
            decorator: supplies request controls to send with the modify

        Raises:
            IdentityStoreError: the modify failed

        """
        if not modlist:
            self.logger.debug("ldapstore.session.modify.no-changes dn=%s", dn)
            return
        try:
            controls = decorator.server_controls() if decorator else []
            if controls:
                self.connection.modify_ext_s(dn, modlist, serverctrls=controls)
            else:
                self.connection.modify_s(dn, modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Could not modify attributes for DN [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e

    @atomic(key="write")
    def try_modify(self, dn: str, modlist: ModifyModList) -> ModifyOutcome:
        """
        Apply ``modlist`` to ``dn``, reporting the tolerable failures as a
        :py:class:`~ldapstore.exceptions.ModifyOutcome` instead of raising.

        When every modification is a ``MOD_ADD``, "value already exists"
        means there is nothing to do; likewise "no such attribute" when
        every modification is a ``MOD_DELETE``.  Schema violations are
        reported as ``SCHEMA_CONFLICT``.

        Raises:
            IdentityStoreError: any other failure

        """
        ops = {op for op, _, _ in modlist}
        try:
            self.connection.modify_s(dn, modlist)
        except ldap.TYPE_OR_VALUE_EXISTS as e:  # type: ignore[attr-defined]
            if ops == {ldap.MOD_ADD}:  # type: ignore[attr-defined]
                return ModifyOutcome.ALREADY_SATISFIED
            msg = f"Could not modify attribute for DN [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e
        except ldap.NO_SUCH_ATTRIBUTE as e:  # type: ignore[attr-defined]
            if ops == {ldap.MOD_DELETE}:  # type: ignore[attr-defined]
                return ModifyOutcome.ALREADY_SATISFIED
            msg = f"Could not modify attribute for DN [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e
        except SCHEMA_VIOLATIONS:
            return ModifyOutcome.SCHEMA_CONFLICT
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Could not modify attribute for DN [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e
        return ModifyOutcome.APPLIED

    def _fallback_dn(self, new_dn: str, counter: int) -> str:
        dn = DirectoryDn.from_string(new_dn)
        parent = dn.parent_dn
        parent.add_first(
            cast("str", dn.first_rdn_attr_name), f"{dn.first_rdn_attr_value}{counter}"
        )
        return str(parent)

    @atomic(key="write")
    def rename(self, old_dn: str, new_dn: str, fallback: bool | None = None) -> str:
        """
        Rename ``old_dn`` to ``new_dn``.

        If an entry named ``new_dn`` already exists and ``fallback`` is on,
        retry with a counter appended to the new RDN value
        (``cn=John Doe0``, ``cn=John Doe1``, ...) up to
        :py:data:`MAX_RENAME_ATTEMPTS` times.

        Args:
            old_dn: the current DN
            new_dn: the requested DN

        Keyword Args:
            fallback: try disambiguated DNs on collision; defaults to
                ``config.allow_rename_fallback``

        Raises:
            IdentityStoreError: the rename failed

        Returns:
            The DN the entry actually has now.  Don't assume it is ``new_dn``.

        """
        if fallback is None:
            fallback = self.config.allow_rename_fallback
        old = DirectoryDn.from_string(old_dn)
        dn = new_dn
        for counter in range(MAX_RENAME_ATTEMPTS):
            target = DirectoryDn.from_string(dn)
            newsuperior = None
            if target.parent_dn != old.parent_dn:
                newsuperior = str(target.parent_dn)
            try:
                self.connection.rename_s(old_dn, target.first_rdn_string, newsuperior)
            except ldap.ALREADY_EXISTS as e:  # type: ignore[attr-defined]
                if not fallback:
                    msg = f"Could not rename entry from DN [{old_dn}] to new DN [{new_dn}]"
                    raise IdentityStoreError(msg, dn=old_dn) from e
                failed_dn = dn
                dn = self._fallback_dn(new_dn, counter)
                self.logger.warning(
                    "ldapstore.session.rename.collision old_dn=%s failed_dn=%s "
                    "fallback_dn=%s",
                    old_dn,
                    failed_dn,
                    dn,
                )
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                msg = f"Could not rename entry from DN [{old_dn}] to new DN [{new_dn}]"
                raise IdentityStoreError(msg, dn=old_dn) from e
            else:
                return dn
        msg = (
            f"Could not rename entry from DN [{old_dn}] to new DN [{new_dn}]. "
            "All fallbacks failed"
        )
        raise IdentityStoreError(msg, dn=old_dn)

    @atomic(key="write")
    def delete(self, dn: str) -> None:
        """
        Delete the entry ``dn``.

        Raises:
            IdentityStoreError: the delete failed

        """
        try:
            self.connection.delete_s(dn)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Could not remove entry [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e

    # Credentials and identifiers

    def authenticate(self, dn: str, password: str | None) -> None:
        """
        Bind as ``dn`` with ``password`` to check the password.

        Raises:
            AuthenticationError: the password is empty or wrong
            IdentityStoreError: the bind failed for another reason

        """
        if not password:
            # An empty password would be an anonymous bind, which succeeds
            self.logger.warning("ldapstore.session.auth.empty-password dn=%s", dn)
            msg = "Empty password used"
            raise AuthenticationError(msg, dn=dn)
        try:
            ldap_object = self._connect("read", dn, password)
        except ldap.INVALID_CREDENTIALS as e:  # type: ignore[attr-defined]
            self.logger.warning("ldapstore.session.auth.invalid-credentials dn=%s", dn)
            msg = f"Invalid credentials for [{dn}]"
            raise AuthenticationError(msg, dn=dn) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"Could not authenticate [{dn}]"
            raise IdentityStoreError(msg, dn=dn) from e
        ldap_object.unbind_s()
        self.logger.debug("ldapstore.session.auth.success dn=%s", dn)

    def decode_entry_uuid(self, value: bytes | str) -> str:
        """
        Turn a raw identifier value into its canonical string form.

        Raises:
            ValueError: a binary identifier is not 16 bytes long

        """
        if isinstance(value, bytes):
            if self.config.is_object_guid:
                return decode_object_guid(value)
            if self.config.is_edirectory and self.config.edirectory_guid:
                return decode_edirectory_guid(value)
            return value.decode("utf-8")
        return str(value)
