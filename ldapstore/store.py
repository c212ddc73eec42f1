"""
The identity store.

:py:class:`LdapIdentityStore` is what callers use: it adds, updates,
removes and finds :py:class:`~ldapstore.models.DirectoryObject` instances,
manages group membership and checks and changes passwords.  The work is
split across a few helpers:

* :py:class:`~ldapstore.codec.AttributeCodec` encodes objects for writing
* :py:class:`~ldapstore.codec.EntryMaterializer` decodes search results
* :py:class:`~ldapstore.conditions.FilterBuilder` builds search filters
* :py:class:`DnRenameResolver` renames entries whose RDN value changed
* :py:class:`MembershipMutator` adds and removes group members

Only :py:class:`~ldapstore.session.LdapSession` talks to the server.
"""

import logging

from ldapstore import ldap

from .codec import AttributeCodec, EntryMaterializer
from .conditions import EqualCondition, FilterBuilder
from .dn import DirectoryDn
from .exceptions import IdentityStoreError, ModifyOutcome, PreconditionError
from .models import (
    AD_PASSWORD_ATTRIBUTE,
    EMPTY_MEMBER_ATTRIBUTE_VALUE,
    USER_PASSWORD_ATTRIBUTE,
    DirectoryObject,
)
from .options import StoreConfig
from .query import DirectoryQuery
from .session import LdapSession, OperationDecorator
from .typing import LDAPData, RDN

logger = logging.getLogger(__name__)


class DnRenameResolver:
    """
    Renames an entry when the value of its RDN attribute no longer matches
    its DN.

    Args:
        session: the directory session

    """

    def __init__(self, session: LdapSession) -> None:
        self.session = session

    @staticmethod
    def _rdn_value(rdn: RDN | None, name: str) -> str | None:
        for attr, value in rdn or ():
            if attr.lower() == name.lower():
                return value
        return None

    def check_rename(self, obj: DirectoryObject) -> bool:
        """
        Rename ``obj``'s entry if its RDN attribute value changed, and set
        ``obj.dn`` to the DN the entry ends up with.

        Nothing happens if the RDN attribute is read-only, or if ``obj``
        doesn't carry a value for it.

        Args:
            obj: the object about to be updated

        Raises:
            IdentityStoreError: the rename failed

        Returns:
            ``True`` if the entry was renamed.

        """
        rdn_attribute_name = obj.rdn_attribute_name
        if not rdn_attribute_name or obj.is_read_only(rdn_attribute_name):
            return False
        new_value = obj.get_attribute_as_string(rdn_attribute_name)
        if new_value is None:
            return False
        first_rdn = obj.dn.first_rdn
        current_value = self._rdn_value(first_rdn, rdn_attribute_name)
        # Any of the attribute's values may name the entry
        if current_value is not None and current_value in (
            obj.get_attribute_as_set(rdn_attribute_name) or set()
        ):
            return False
        if current_value is None:
            new_rdn = [(rdn_attribute_name, new_value)]
        else:
            # Keep the other parts of a multi-valued RDN
            new_rdn = [
                (attr, value)
                for attr, value in first_rdn
                if attr.lower() != rdn_attribute_name.lower()
            ]
            new_rdn.insert(0, (rdn_attribute_name, new_value))
        new_dn = DirectoryDn([tuple(new_rdn), *obj.dn.parent_dn.rdns])
        old_dn = str(obj.dn)
        actual_dn = self.session.rename(old_dn, str(new_dn))
        obj.dn = DirectoryDn.from_string(actual_dn)
        logger.debug(
            "ldapstore.store.rename.success old_dn=%s requested_dn=%s dn=%s",
            old_dn,
            new_dn,
            actual_dn,
        )
        return True


class MembershipMutator:
    """
    Adds and removes values of a group's membership attribute.

    Adding a value that is already there, or removing one that is already
    gone, counts as success.  Some schemas require the membership attribute
    to have at least one value; removing the last member of such a group
    swaps in :py:data:`~ldapstore.models.EMPTY_MEMBER_ATTRIBUTE_VALUE`.

    Args:
        session: the directory session

    """

    def __init__(self, session: LdapSession) -> None:
        self.session = session

    def add_member(self, group_dn: str, member_attribute: str, value: str) -> None:
        """
        Add ``value`` to ``member_attribute`` of ``group_dn``.

        Raises:
            IdentityStoreError: the modify failed

        """
        modlist = [(ldap.MOD_ADD, member_attribute, [value.encode("utf-8")])]  # type: ignore[attr-defined]
        outcome = self.session.try_modify(group_dn, modlist)
        if outcome == ModifyOutcome.ALREADY_SATISFIED:
            logger.debug(
                "ldapstore.store.member.add.already-member group=%s attribute=%s value=%s",
                group_dn,
                member_attribute,
                value,
            )
        elif outcome == ModifyOutcome.SCHEMA_CONFLICT:
            msg = f"Could not add member [{value}] to group [{group_dn}]"
            raise IdentityStoreError(msg, dn=group_dn)

    def remove_member(self, group_dn: str, member_attribute: str, value: str) -> None:
        """
        Remove ``value`` from ``member_attribute`` of ``group_dn``.

        Raises:
            IdentityStoreError: the modify failed, or the placeholder swap
                for the last member failed

        """
        encoded = value.encode("utf-8")
        modlist = [(ldap.MOD_DELETE, member_attribute, [encoded])]  # type: ignore[attr-defined]
        outcome = self.session.try_modify(group_dn, modlist)
        if outcome == ModifyOutcome.ALREADY_SATISFIED:
            logger.debug(
                "ldapstore.store.member.remove.not-member group=%s attribute=%s value=%s",
                group_dn,
                member_attribute,
                value,
            )
        elif outcome == ModifyOutcome.SCHEMA_CONFLICT:
            logger.info(
                "ldapstore.store.member.remove.placeholder group=%s attribute=%s",
                group_dn,
                member_attribute,
            )
            self.session.modify(
                group_dn,
                [
                    (ldap.MOD_DELETE, member_attribute, [encoded]),  # type: ignore[attr-defined]
                    (
                        ldap.MOD_ADD,  # type: ignore[attr-defined]
                        member_attribute,
                        [EMPTY_MEMBER_ATTRIBUTE_VALUE.encode("utf-8")],
                    ),
                ],
            )


class LdapIdentityStore:
    """
    Reads and writes :py:class:`~ldapstore.models.DirectoryObject`
    instances.

    Usage::

        store = LdapIdentityStore()
        query = DirectoryQuery(
            "ou=people,dc=example,dc=com",
            object_classes=["inetOrgPerson"],
            conditions=[EqualCondition("uid", "alice")],
            returning_attributes=["uid", "cn", "mail"],
        )
        alice = store.fetch_first_result(query)
        alice.set_single_attribute("mail", "alice@example.com")
        store.update(alice)

    Keyword Args:
        config: the store configuration.  If not given, it is built from
            ``settings.LDAP_SERVERS[server_key]``.
        session: the directory session.  If not given, an
            :py:class:`~ldapstore.session.LdapSession` is made for ``config``.
        server_key: the ``settings.LDAP_SERVERS`` key to configure from

    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        session: LdapSession | None = None,
        server_key: str = "default",
    ) -> None:
        self.config = config if config is not None else StoreConfig.from_settings(server_key)
        self.session = session if session is not None else LdapSession(self.config)
        self.codec = AttributeCodec(self.config)
        self.materializer = EntryMaterializer(
            self.config, self.codec, self.session.decode_entry_uuid
        )
        self.filter_builder = FilterBuilder()
        self.rename_resolver = DnRenameResolver(self.session)
        self.membership = MembershipMutator(self.session)

    # Writing

    def add(self, obj: DirectoryObject) -> None:
        """
        Create the entry for ``obj`` and set ``obj.uuid`` to the identifier
        the directory assigned.

        If the entry is created but its identifier can't be read back, the
        entry is left in the directory and we still raise.

        Raises:
            PreconditionError: ``obj.uuid`` is already set
            IdentityStoreError: the add, or reading back the identifier,
                failed

        """
        dn = str(obj.dn)
        if obj.uuid:
            msg = f"Can't add object with already assigned uuid: {obj.uuid}"
            raise PreconditionError(msg, dn=dn)
        self.session.create_entry(dn, self.codec.add_modlist(obj))
        obj.uuid = self.get_entry_identifier(obj)
        logger.debug("ldapstore.store.add.success dn=%s uuid=%s", dn, obj.uuid)

    def update(self, obj: DirectoryObject) -> None:
        """
        Save ``obj``.  If its RDN attribute value changed, the entry is
        renamed first, and ``obj.dn`` becomes whatever DN the server granted.

        The rename and the attribute save are separate operations.  If the
        save fails after a successful rename, the entry stays renamed with
        its old attribute values; ``obj.dn`` already points at the new DN,
        so calling :py:meth:`update` again is safe.

        Raises:
            IdentityStoreError: the rename or the modify failed

        """
        self.rename_resolver.check_rename(obj)
        dn = str(obj.dn)
        self.session.modify(dn, self.codec.replace_modlist(obj))
        logger.debug("ldapstore.store.update.success dn=%s", dn)

    def remove(self, obj: DirectoryObject) -> None:
        """
        Delete ``obj``'s entry.  Group memberships pointing at it are not
        cleaned up.

        Raises:
            IdentityStoreError: the delete failed

        """
        dn = str(obj.dn)
        self.session.delete(dn)
        logger.debug("ldapstore.store.remove.success dn=%s", dn)

    def get_entry_identifier(self, obj: DirectoryObject) -> str:
        """
        Read the identifier of ``obj``'s entry from the directory.

        Raises:
            IdentityStoreError: the entry or its identifier attribute wasn't
                found

        """
        dn = str(obj.dn)
        uuid_attribute = self.config.uuid_attribute
        conditions = [EqualCondition(attr, value) for attr, value in obj.dn.first_rdn or ()]
        searchfilter = self.filter_builder.build(conditions, []).to_string()
        results = self.session.search(
            dn, searchfilter, [uuid_attribute], ldap.SCOPE_BASE  # type: ignore[attr-defined]
        )
        if not results:
            msg = f"Couldn't find the entry we just added: {dn}"
            raise IdentityStoreError(msg, dn=dn)
        for name, values in results[0][1].items():
            if name.lower() == uuid_attribute.lower() and values:
                return self.session.decode_entry_uuid(values[0])
        msg = f"Entry {dn} has no {uuid_attribute} attribute"
        raise IdentityStoreError(msg, dn=dn)

    # Querying

    def create_identity_type_search_filter(self, query: DirectoryQuery) -> str:
        return self.filter_builder.create_identity_type_search_filter(query)

    def _returning_attributes(self, query: DirectoryQuery) -> list[str]:
        """
        The attributes to ask the server for.  The identifier attribute is
        often operational, so we always name it; with no explicit list we
        ask for all user attributes plus the identifier.
        """
        attributes = list(query.returning_attributes) or ["*"]
        if not query.is_requested(self.config.uuid_attribute):
            attributes.append(self.config.uuid_attribute)
        return attributes

    def _lookup(self, query: DirectoryQuery, condition: EqualCondition) -> list[DirectoryObject]:
        identifier = condition.value
        if isinstance(identifier, bytes):
            identifier = self.session.decode_entry_uuid(identifier)
        entry = self.session.lookup_by_id(
            query.search_dn, str(identifier), self._returning_attributes(query)
        )
        if entry is None:
            return []
        return [self.materializer.materialize(entry, query)]

    def _search(self, query: DirectoryQuery) -> list[LDAPData]:
        searchfilter = self.create_identity_type_search_filter(query)
        attributes = self._returning_attributes(query)
        if self.config.pagination and query.limit > 0:
            return self.session.search_paginated(
                query.search_dn, searchfilter, query, attributes
            )
        return self.session.search(
            query.search_dn, searchfilter, attributes, query.ldap_scope
        )

    def fetch_query_results(self, query: DirectoryQuery) -> list[DirectoryObject]:
        """
        Run ``query``.

        An equality condition on the identifier attribute turns the query
        into a lookup by identifier, which returns zero or one objects.
        Subtree searches don't return the search base entry itself.

        Raises:
            PreconditionError: the query asks for sorting
            MaterializationError: a result couldn't be decoded.  No results
                are returned.
            IdentityStoreError: the search failed

        """
        if query.order_by:
            msg = "LDAP Query sorting not supported"
            raise PreconditionError(msg, dn=query.search_dn)
        try:
            condition = query.find_equal_condition(self.config.uuid_attribute)
            if condition is not None:
                return self._lookup(query, condition)
            base = DirectoryDn.from_string(query.search_dn)
            results = []
            for entry in self._search(query):
                if query.scope == "sub" and DirectoryDn.from_string(entry[0]) == base:
                    continue
                results.append(self.materializer.materialize(entry, query))
        except IdentityStoreError:
            raise
        except (ldap.LDAPError, ValueError) as e:  # type: ignore[attr-defined]
            msg = f"Querying of LDAP failed {query}"
            raise IdentityStoreError(msg, dn=query.search_dn) from e
        return results

    def count_query_results(self, query: DirectoryQuery) -> int:
        """
        Count every result of ``query``, ignoring its limit and offset.
        """
        limit, offset = query.limit, query.offset
        query.limit = 0
        query.offset = 0
        try:
            return len(self.fetch_query_results(query))
        finally:
            query.limit = limit
            query.offset = offset

    def fetch_first_result(self, query: DirectoryQuery) -> DirectoryObject | None:
        """
        Return the single result of ``query``, or ``None`` if there is none.

        Raises:
            IdentityStoreError: there is more than one result
        """
        results = self.fetch_query_results(query)
        if not results:
            return None
        if len(results) > 1:
            msg = f"Expected at most one result, got {len(results)} for {query}"
            raise IdentityStoreError(msg, dn=query.search_dn)
        return results[0]

    # Membership

    def add_member_to_group(self, group_dn: str, member_attribute: str, value: str) -> None:
        self.membership.add_member(group_dn, member_attribute, value)

    def remove_member_from_group(
        self, group_dn: str, member_attribute: str, value: str
    ) -> None:
        self.membership.remove_member(group_dn, member_attribute, value)

    # Passwords

    def validate_password(self, user: DirectoryObject, password: str | None) -> None:
        """
        Check ``password`` by binding as ``user``.

        Raises:
            AuthenticationError: the password is empty or wrong

        """
        self.session.authenticate(str(user.dn), password)

    def update_password(
        self,
        user: DirectoryObject,
        password: str,
        decorator: OperationDecorator | None = None,
    ) -> None:
        """
        Set ``user``'s password.

        Active Directory takes the new password in ``unicodePwd``, surrounded
        by double quotes and encoded as UTF-16LE.  Other servers get it in
        ``userPassword``.

        Args:
            user: the user whose password to set
            password: the new password

        Keyword Args:
            decorator: supplies request controls to send with the modify

        Raises:
            IdentityStoreError: the modify failed

        """
        dn = str(user.dn)
        if self.config.is_active_directory:
            value = f'"{password}"'.encode("utf-16-le")
            name = AD_PASSWORD_ATTRIBUTE
        else:
            value = password.encode("utf-8")
            name = USER_PASSWORD_ATTRIBUTE
        modlist = [(ldap.MOD_REPLACE, name, [value])]  # type: ignore[attr-defined]
        self.session.modify(dn, modlist, decorator=decorator)
        logger.info("ldapstore.store.password.updated dn=%s attribute=%s", dn, name)
